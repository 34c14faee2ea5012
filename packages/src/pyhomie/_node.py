"""Homie nodes and properties.

A node groups related properties of a device (e.g. a ``temp`` node with
a ``value`` property).  When the device bootstraps, every node
announces itself and its properties, then subscribes to the ``/set``
topic of each settable property::

    {base}{device}/{node}/$name
    {base}{device}/{node}/$type
    {base}{device}/{node}/$properties      ← "value,unit-mode"
    {base}{device}/{node}/{prop}/$name
    {base}{device}/{node}/{prop}/$datatype
    {base}{device}/{node}/{prop}/$settable
    {base}{device}/{node}/{prop}/$retained
    {base}{device}/{node}/{prop}/$unit     ← only when set
    {base}{device}/{node}/{prop}/$format   ← only when set
    {base}{device}/{node}/{prop}           ← property value
    {base}{device}/{node}/{prop}/set       ← subscribed when settable
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, TypeAlias

from pyhomie._errors import ConfigurationError, StateError

if TYPE_CHECKING:
    from pyhomie._device import Device

logger = logging.getLogger(__name__)

DATATYPES = frozenset({"integer", "float", "boolean", "string", "enum", "color"})
_FORMAT_REQUIRED = frozenset({"enum", "color"})

NodePublisher: TypeAlias = "Callable[[Node], Awaitable[None]]"
"""Called after the node subscribed, on every bootstrap."""

SetHandler: TypeAlias = "Callable[[Property, str], Awaitable[None]]"
"""Receives (property, decoded payload) for a ``/set`` message."""


@dataclass
class Property:
    """A single value exposed by a node.

    Raises:
        ConfigurationError: For an unknown datatype, or an ``enum`` /
            ``color`` property without ``format``.
    """

    name: str
    datatype: str = "string"
    settable: bool = False
    retained: bool = True
    display_name: str | None = None
    unit: str | None = None
    format: str | None = None
    on_set: SetHandler | None = field(default=None, repr=False)
    _node: Node | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.datatype not in DATATYPES:
            msg = (
                f"Property '{self.name}' has unknown datatype {self.datatype!r}; "
                f"expected one of {', '.join(sorted(DATATYPES))}"
            )
            raise ConfigurationError(msg)
        if self.datatype in _FORMAT_REQUIRED and not self.format:
            msg = f"Property '{self.name}' of type {self.datatype} requires a format"
            raise ConfigurationError(msg)

    @property
    def node(self) -> Node:
        if self._node is None:
            msg = f"Property '{self.name}' is not attached to a node"
            raise StateError(msg)
        return self._node

    async def publish(self) -> None:
        """Announce the property attributes."""
        node = self.node
        await node.send_message(f"{self.name}/$name", self.display_name or self.name)
        await node.send_message(f"{self.name}/$datatype", self.datatype)
        await node.send_message(f"{self.name}/$settable", _bool(self.settable))
        await node.send_message(f"{self.name}/$retained", _bool(self.retained))
        if self.unit is not None:
            await node.send_message(f"{self.name}/$unit", self.unit)
        if self.format is not None:
            await node.send_message(f"{self.name}/$format", self.format)

    async def send(self, value: Any) -> None:
        """Publish the property value (booleans as ``true``/``false``)."""
        payload = _bool(value) if isinstance(value, bool) else str(value)
        await self.node.send_message(self.name, payload, retain=self.retained)

    async def handle_set(self, topic: str, payload: bytes) -> None:
        value = payload.decode("utf-8")
        if self.on_set is None:
            logger.warning("No set handler for %s, ignoring %r", topic, value)
            return
        await self.on_set(self, value)


class Node:
    """A named group of properties owned by exactly one device."""

    def __init__(
        self,
        name: str,
        node_type: str,
        *,
        display_name: str | None = None,
    ) -> None:
        self._name = name
        self._node_type = node_type
        self._display_name = display_name
        self._device: Device | None = None
        self._properties: dict[str, Property] = {}
        self._publisher: NodePublisher | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def node_type(self) -> str:
        return self._node_type

    @property
    def device(self) -> Device:
        if self._device is None:
            msg = f"Node '{self._name}' is not attached to a device"
            raise StateError(msg)
        return self._device

    @property
    def properties(self) -> Mapping[str, Property]:
        return MappingProxyType(self._properties)

    @property
    def publisher(self) -> NodePublisher | None:
        return self._publisher

    def attach(self, device: Device) -> None:
        """Set the owning device.  Called by :meth:`Device.add_node`.

        Raises:
            ConfigurationError: If already attached to another device.
        """
        if self._device is not None and self._device is not device:
            msg = (
                f"Node '{self._name}' already belongs to device "
                f"'{self._device.name}'"
            )
            raise ConfigurationError(msg)
        self._device = device

    def add_property(self, prop: Property) -> Property:
        """Register *prop* on this node.

        Raises:
            ConfigurationError: If a property with that name exists.
        """
        if prop.name in self._properties:
            msg = f"Property '{prop.name}' already added to node '{self._name}'"
            raise ConfigurationError(msg)
        prop._node = self
        self._properties[prop.name] = prop
        return prop

    def new_property(
        self,
        name: str,
        datatype: str = "string",
        **kwargs: Any,
    ) -> Property:
        return self.add_property(Property(name, datatype, **kwargs))

    def get_property(self, name: str) -> Property | None:
        return self._properties.get(name)

    def set_publisher(self, publisher: NodePublisher) -> Node:
        """Assign the node publisher; a second assignment is rejected.

        Raises:
            ConfigurationError: If a publisher is already set.
        """
        if self._publisher is not None:
            msg = f"Node publisher for '{self._name}' is already configured"
            raise ConfigurationError(msg)
        self._publisher = publisher
        return self

    def topic(self, part: str) -> str:
        return self.device.topic(f"{self._name}/{part}")

    async def send_message(self, part: str, value: str, *, retain: bool = True) -> None:
        await self.device.send_message(f"{self._name}/{part}", value, retain=retain)

    async def publish(self) -> None:
        """Announce the node and all of its properties."""
        await self.send_message("$name", self._display_name or self._name)
        await self.send_message("$type", self._node_type)
        await self.send_message("$properties", ",".join(self._properties))
        for prop in self._properties.values():
            await prop.publish()

    async def subscribe(self) -> None:
        """Route ``/set`` messages of settable properties to their handlers."""
        for prop in self._properties.values():
            if prop.settable:
                await self.device.subscribe(
                    f"{self._name}/{prop.name}/set",
                    prop.handle_set,
                )

    def __repr__(self) -> str:
        return f"Node(name={self._name!r}, node_type={self._node_type!r})"


def _bool(value: bool) -> str:
    return "true" if value else "false"
