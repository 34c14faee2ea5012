"""Homie topic addressing.

All device traffic lives below ``{base_topic}{device}/``::

    homie/sensor1/$state            ← device attribute
    homie/sensor1/temp/$properties  ← node attribute
    homie/sensor1/temp/value/set    ← settable property (subscribed)
    homie/$broadcast/alert          ← broadcast (inbound only)

``base_topic`` carries its own trailing ``/`` (validated by
:class:`~pyhomie._settings.HomieSettings`), so derivation is plain
concatenation — no normalisation is applied to any segment.
"""

from __future__ import annotations

BROADCAST_SEGMENT = "$broadcast"


def device_topic(base_topic: str, device_name: str, part: str) -> str:
    """Return ``{base_topic}{device_name}/{part}`` verbatim."""
    return f"{base_topic}{device_name}/{part}"


def broadcast_filter(base_topic: str) -> str:
    """Subscription filter for single-level broadcast messages."""
    return f"{base_topic}{BROADCAST_SEGMENT}/+"


def broadcast_level(base_topic: str, topic: str) -> str:
    """Strip the broadcast prefix from *topic*.

    Topics outside the broadcast namespace are returned unchanged.
    """
    return topic.removeprefix(f"{base_topic}{BROADCAST_SEGMENT}/")


def topic_matches(pattern: str, topic: str) -> bool:
    """Match *topic* against an MQTT subscription filter.

    Supports the ``+`` (single level) and ``#`` (remaining levels,
    including the parent) wildcards.
    """
    pattern_levels = pattern.split("/")
    topic_levels = topic.split("/")
    for index, level in enumerate(pattern_levels):
        if level == "#":
            return True
        if index >= len(topic_levels):
            return False
        if level not in ("+", topic_levels[index]):
            return False
    return len(pattern_levels) == len(topic_levels)
