"""Two-pass call-graph resolution over the methods of one assembly.

Pass 1 visits every method, registers it in a :class:`HandleLookupTable` and
collects its call targets. Callees may be defined after their callers, so
targets are only resolved in pass 2, once the table is complete and frozen.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from dncil.cil.body import CilMethodBody

from assembly_analyzer.analysis.il_calls import PendingCallIndex, extract_calls
from assembly_analyzer.analysis.naming import ParameterKeyStyle, describe_method_definition, entity_key
from assembly_analyzer.metadata.model import Handle, MetadataStore, MethodDefRow

LOGGER = logging.getLogger(__name__)

BodyMap = Mapping[Handle, Optional[CilMethodBody]]


@dataclass(frozen=True, slots=True)
class LocalMethod:
    handle: Handle
    name: str
    address: int


@dataclass(frozen=True, slots=True)
class CalledMethod:
    name: str
    address: int

    def as_dict(self) -> dict:
        return {"name": self.name, "address": self.address}


class HandleLookupTable:
    """Handle -> local method definition; grows during pass 1, read-only afterwards."""

    def __init__(self) -> None:
        self._entries: Dict[Handle, LocalMethod] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def add(self, method: LocalMethod) -> None:
        if self._frozen:
            raise RuntimeError("Lookup table is frozen; pass 1 has already completed")
        self._entries[method.handle] = method

    def freeze(self) -> "HandleLookupTable":
        self._frozen = True
        return self

    def get(self, handle: Handle) -> Optional[LocalMethod]:
        return self._entries.get(handle)

    def __contains__(self, handle: object) -> bool:
        return handle in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Handle]:
        return iter(self._entries)


def resolve_calls(
    pending: PendingCallIndex,
    table: HandleLookupTable,
    *,
    caller: Optional[LocalMethod] = None,
    legacy_self_reference: bool = False,
) -> List[CalledMethod]:
    """Turn one method's pending call index into final call records.

    Hits in the table resolve to the callee's key and RVA, misses to the
    precomputed fallback name with address 0. ``legacy_self_reference``
    makes hits carry the caller's own key and RVA instead, which is what
    earlier versions of this tool emitted.

    A local callee without IL (abstract or interface method) is still a hit:
    its record carries the callee key with address 0.
    """

    if not table.frozen:
        raise RuntimeError("Call resolution requires a frozen lookup table")
    if legacy_self_reference and caller is None:
        raise ValueError("legacy_self_reference needs the calling method")

    records: List[CalledMethod] = []
    for handle, fallback in pending.items():
        local = table.get(handle)
        if local is None:
            records.append(CalledMethod(fallback, 0))
        elif legacy_self_reference:
            records.append(CalledMethod(caller.name, caller.address))
        else:
            records.append(CalledMethod(local.name, local.address))
    return records


class CallGraphResolver:
    """Runs both passes for a set of methods and keeps nothing between runs."""

    def __init__(
        self,
        store: MetadataStore,
        *,
        style: ParameterKeyStyle = ParameterKeyStyle.NAMES,
        legacy_self_reference: bool = False,
    ) -> None:
        self.store = store
        self.style = style
        self.legacy_self_reference = legacy_self_reference

    def local_method(self, method: MethodDefRow) -> LocalMethod:
        key = entity_key(describe_method_definition(self.store, method.handle, style=self.style))
        return LocalMethod(method.handle, key, method.rva)

    def scan_method(
        self, table: HandleLookupTable, method: MethodDefRow, bodies: Optional[BodyMap] = None
    ) -> Tuple[LocalMethod, PendingCallIndex]:
        local = self.local_method(method)
        table.add(local)
        if bodies is None:
            return local, extract_calls(self.store, method)
        body = bodies.get(method.handle)
        # None marks a method whose body is absent or did not decode
        return local, extract_calls(self.store, method, body) if body is not None else {}

    def scan(
        self, methods: Iterable[MethodDefRow], bodies: Optional[BodyMap] = None
    ) -> Tuple[HandleLookupTable, List[Tuple[LocalMethod, PendingCallIndex]]]:
        """Pass 1: register every method and collect its pending calls.

        ``bodies`` holds already decoded bodies by handle; without it every
        body is decoded here.
        """

        table = HandleLookupTable()
        scanned = [self.scan_method(table, method, bodies) for method in methods]
        LOGGER.debug("Pass 1 registered %d methods", len(table))
        return table.freeze(), scanned

    def resolve(self, table: HandleLookupTable, local: LocalMethod, pending: PendingCallIndex) -> List[CalledMethod]:
        return resolve_calls(pending, table, caller=local, legacy_self_reference=self.legacy_self_reference)


__all__ = ["BodyMap", "CallGraphResolver", "CalledMethod", "HandleLookupTable", "LocalMethod", "resolve_calls"]
