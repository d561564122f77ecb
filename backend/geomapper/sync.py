"""Level-triggered reconciliation of the layer registry onto the engine stack.

``plan_reconcile`` is pure: it looks at a registry snapshot and the engine's
current stack and returns the commands that make the stack match. Running the
plan against an already reconciled stack yields no commands.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Union

from .engine import DRAWING_ROLE, LayerHandle, MapEngine
from .layers import Layer
from .utils.logging import get_logger

logger = get_logger(__name__)

# Managed layers occupy z-indices 1..n in registry order; 0 belongs to the base map.
FIRST_MANAGED_Z = 1


@dataclass(frozen=True)
class AddLayer:
    handle: LayerHandle
    visible: bool
    z_index: int

    def apply(self, engine: MapEngine) -> None:
        engine.set_visible(self.handle, self.visible)
        engine.set_z_index(self.handle, self.z_index)
        engine.add_layer(self.handle)


@dataclass(frozen=True)
class RemoveLayer:
    handle: LayerHandle

    def apply(self, engine: MapEngine) -> None:
        engine.remove_layer(self.handle)


@dataclass(frozen=True)
class SetVisibility:
    handle: LayerHandle
    visible: bool

    def apply(self, engine: MapEngine) -> None:
        engine.set_visible(self.handle, self.visible)


@dataclass(frozen=True)
class SetZIndex:
    handle: LayerHandle
    z_index: int

    def apply(self, engine: MapEngine) -> None:
        engine.set_z_index(self.handle, self.z_index)


Command = Union[AddLayer, RemoveLayer, SetVisibility, SetZIndex]


def plan_reconcile(snapshot: Sequence[Layer], stack: Sequence[LayerHandle]) -> List[Command]:
    reserved = [handle for handle in stack if handle.reserved]
    managed = [handle for handle in stack if not handle.reserved]

    wanted = {id(layer.handle) for layer in snapshot}
    on_map = {id(handle) for handle in stack}
    commands: List[Command] = []

    for handle in managed:
        if id(handle) not in wanted:
            commands.append(RemoveLayer(handle))

    z_index = FIRST_MANAGED_Z - 1
    for layer in snapshot:
        handle = layer.handle
        if handle.reserved:
            logger.warning("Registry entry points at a reserved layer; ignoring", extra={"layer_id": layer.id})
            continue
        z_index += 1
        if id(handle) not in on_map:
            commands.append(AddLayer(handle, layer.visible, z_index))
            continue
        if handle.visible != layer.visible:
            commands.append(SetVisibility(handle, layer.visible))
        if handle.z_index != z_index:
            commands.append(SetZIndex(handle, z_index))

    for handle in reserved:
        if handle.role == DRAWING_ROLE and handle.z_index <= z_index:
            commands.append(SetZIndex(handle, z_index + 1))

    return commands


def apply_commands(engine: MapEngine, commands: Sequence[Command]) -> None:
    for command in commands:
        command.apply(engine)


def reconcile(snapshot: Sequence[Layer], engine: MapEngine) -> List[Command]:
    commands = plan_reconcile(snapshot, engine.layers())
    apply_commands(engine, commands)
    if commands:
        logger.debug("Reconciled layer stack", extra={"commands": len(commands)})
    return commands
