"""
Resource registry.

The registry owns the shared pools of the orchestrator:
global UNIs, global LTPs, installed forwarding constructs and installed EVCs.

Ownership rules
1. A global UNI and its LTP share one interface object, so service
   sub interfaces attached through either are seen by both.
2. Reference counts are kept per interface id and count attached
   forwarding constructs. Nothing is removed while its count is non zero.
3. Every read returns a deep copy. Callers never hold a reference into a pool.

Locking
_lock guards the maps for short bookkeeping sections only. It is never held
while a backend call is outstanding.
claim gives per id serialization for whole operations, see registry.locks.
"""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Set

from carrier_ethernet.core.errors import ResourceConflictError, ValidationError
from carrier_ethernet.core.types import (
    Enni,
    ForwardingConstruct,
    GenericNi,
    Inni,
    LogicalTerminationPoint,
    NetworkInterface,
    Uni,
    VirtualConnection,
    global_interface,
)
from carrier_ethernet.registry.locks import ClaimTable

logger = logging.getLogger(__name__)


@dataclass
class ResourceRegistry:
    """
    Shared pools keyed by string id.

    removed_uni_ids and removed_ltp_ids remember explicit removals so topology
    listings can hide or show them.
    """

    _unis: Dict[str, Uni] = field(default_factory=dict)
    _ltps: Dict[str, LogicalTerminationPoint] = field(default_factory=dict)
    _fcs: Dict[str, ForwardingConstruct] = field(default_factory=dict)
    _evcs: Dict[str, VirtualConnection] = field(default_factory=dict)
    _ref_counts: Dict[str, int] = field(default_factory=dict)
    removed_uni_ids: Set[str] = field(default_factory=set)
    removed_ltp_ids: Set[str] = field(default_factory=set)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    _claims: ClaimTable = field(default_factory=ClaimTable, repr=False)

    @contextmanager
    def claim(
        self,
        evcs: Iterable[str] = (),
        unis: Iterable[str] = (),
        fcs: Iterable[str] = (),
        ltps: Iterable[str] = (),
    ) -> Iterator[None]:
        """Serialize work on the given ids against any other claim on them."""
        keys = [("evc", i) for i in evcs]
        keys += [("uni", i) for i in unis]
        keys += [("fc", i) for i in fcs]
        keys += [("ltp", i) for i in ltps]
        with self._claims.claim(keys):
            yield

    # UNI pool

    def add_global_uni(self, uni: Uni) -> Uni:
        """
        Insert a UNI into the global pool, together with its LTP.

        Never overwrites. Raises ResourceConflictError if the id is present.
        """
        with self.claim(unis=[uni.id], ltps=[uni.id]), self._lock:
            if uni.id in self._unis:
                raise ResourceConflictError(f"UNI {uni.id} already exists")
            entry = global_interface(uni)
            self._unis[uni.id] = entry  # type: ignore[assignment]
            if uni.id not in self._ltps:
                self._ltps[uni.id] = LogicalTerminationPoint(ni=entry, cfg_id=uni.cfg_id or uni.id)
            self.removed_uni_ids.discard(uni.id)
            self.removed_ltp_ids.discard(uni.id)
            logger.info("added global UNI %s", uni.id)
            return self._uni_snapshot(uni.id)

    def remove_global_uni(self, uni_id: str) -> Uni:
        """Remove an unreferenced global UNI and its LTP."""
        with self.claim(unis=[uni_id], ltps=[uni_id]), self._lock:
            if uni_id not in self._unis:
                raise ValidationError(f"UNI {uni_id} does not exist")
            if self.ref_count(uni_id) != 0:
                raise ResourceConflictError(
                    f"UNI {uni_id} is in use by {self.ref_count(uni_id)} forwarding constructs"
                )
            removed = self._uni_snapshot(uni_id)
            del self._unis[uni_id]
            self._ltps.pop(uni_id, None)
            self._ref_counts.pop(uni_id, None)
            self.removed_uni_ids.add(uni_id)
            self.removed_ltp_ids.add(uni_id)
            logger.info("removed global UNI %s", uni_id)
            return removed

    def get_uni(self, uni_id: str) -> Optional[Uni]:
        with self._lock:
            if uni_id not in self._unis:
                return None
            return self._uni_snapshot(uni_id)

    def unis(self) -> List[Uni]:
        with self._lock:
            return [self._uni_snapshot(k) for k in sorted(self._unis)]

    # LTP pool

    def add_global_ltp(
        self,
        ltp: LogicalTerminationPoint,
        pair: Optional[LogicalTerminationPoint] = None,
    ) -> LogicalTerminationPoint:
        """
        Insert an LTP into the global pool.

        A UNI LTP reuses the global UNI when one exists and creates it otherwise.
        pair is the LTP at the far end of an INNI or ENNI link. It is added
        alongside when absent.
        """
        ids = [ltp.id] + ([pair.id] if pair is not None else [])
        with self.claim(unis=ids, ltps=ids), self._lock:
            if ltp.id in self._ltps:
                raise ResourceConflictError(f"LTP {ltp.id} already exists")
            self._insert_ltp(ltp)
            if pair is not None and pair.id not in self._ltps:
                self._insert_ltp(pair)
            return self._ltp_snapshot(ltp.id)

    def _insert_ltp(self, ltp: LogicalTerminationPoint) -> None:
        match ltp.ni:
            case Uni():
                entry: NetworkInterface = self._unis.get(ltp.id) or global_interface(ltp.ni)
                self._unis[ltp.id] = entry  # type: ignore[assignment]
                self.removed_uni_ids.discard(ltp.id)
            case Inni() | Enni():
                entry = global_interface(ltp.ni)
            case GenericNi():
                raise ValidationError(f"connect point {ltp.id} cannot host a termination point")
            case _:
                raise TypeError(f"unsupported interface {ltp.ni!r}")
        self._ltps[ltp.id] = LogicalTerminationPoint(ni=entry, cfg_id=ltp.cfg_id or ltp.id)
        self.removed_ltp_ids.discard(ltp.id)
        logger.info("added global %s LTP %s", ltp.type.value, ltp.id)

    def remove_global_ltp(self, ltp_id: str, pair_id: Optional[str] = None) -> LogicalTerminationPoint:
        """
        Remove an unreferenced global LTP.

        Removing a UNI LTP removes the global UNI too.
        pair_id names the LTP at the far end of a trunk link. It is removed in
        the same step, and the whole removal fails if the pair is still in use.
        """
        ids = [ltp_id] + ([pair_id] if pair_id else [])
        with self.claim(unis=ids, ltps=ids), self._lock:
            if ltp_id not in self._ltps:
                raise ValidationError(f"LTP {ltp_id} does not exist")
            for key in ids:
                if key in self._ltps and self.ref_count(key) != 0:
                    raise ResourceConflictError(
                        f"LTP {key} is in use by {self.ref_count(key)} forwarding constructs"
                    )
            removed = self._ltp_snapshot(ltp_id)
            for key in ids:
                entry = self._ltps.pop(key, None)
                if entry is None:
                    continue
                self._ref_counts.pop(key, None)
                self.removed_ltp_ids.add(key)
                if isinstance(entry.ni, Uni):
                    self._unis.pop(key, None)
                    self.removed_uni_ids.add(key)
                logger.info("removed global LTP %s", key)
            return removed

    def get_ltp(self, ltp_id: str) -> Optional[LogicalTerminationPoint]:
        with self._lock:
            if ltp_id not in self._ltps:
                return None
            return self._ltp_snapshot(ltp_id)

    def ltps(self) -> List[LogicalTerminationPoint]:
        with self._lock:
            return [self._ltp_snapshot(k) for k in sorted(self._ltps)]

    def ref_count(self, ni_id: str) -> int:
        with self._lock:
            return self._ref_counts.get(ni_id, 0)

    # forwarding constructs

    def check_admission(
        self,
        fc: ForwardingConstruct,
        ltp_ids: Optional[Iterable[str]] = None,
    ) -> None:
        """
        Check service interfaces of fc against the global pool.

        Only ltp_ids are checked when given. Interfaces already attached by fc
        itself are ignored, so an update can re check its own LTPs.
        Raises ValidationError with the first reason found.
        """
        wanted = set(ltp_ids) if ltp_ids is not None else set(fc.ltp_ids())
        with self._lock:
            for ltp in fc.ltps:
                if ltp.id not in wanted:
                    continue
                entry = self._ltps.get(ltp.id)
                if entry is None:
                    continue
                reason: Optional[str]
                match (entry.ni, ltp.ni):
                    case (Uni() as pooled, Uni() as requested):
                        reason = pooled.validate_service_ni(requested, owner=fc.id)
                    case (Inni() as pooled, Inni() as requested):
                        reason = pooled.validate_service_ni(requested, owner=fc.id)
                    case (Enni() as pooled, Enni() as requested):
                        reason = pooled.validate_service_ni(requested, owner=fc.id)
                    case _:
                        reason = (
                            f"LTP {ltp.id} is registered as {entry.type.value} "
                            f"but requested as {ltp.type.value}"
                        )
                if reason:
                    raise ValidationError(reason)

    def commit_fc(self, fc: ForwardingConstruct) -> ForwardingConstruct:
        """
        Register an installed forwarding construct.

        Attaches every service interface to its global entry, creating global
        entries on first use, and increments each LTP reference count by one.
        """
        if not fc.id:
            raise ValidationError("forwarding construct has no id")
        with self.claim(fcs=[fc.id], ltps=fc.ltp_ids()), self._lock:
            if fc.id in self._fcs:
                raise ResourceConflictError(f"forwarding construct {fc.id} already exists")
            for ltp in fc.ltps:
                self._attach(fc.id, ltp)
            self._fcs[fc.id] = copy.deepcopy(fc)
            return self._fc_snapshot(fc.id)

    def replace_fc(
        self,
        fc: ForwardingConstruct,
        attach: Iterable[str],
        detach: Iterable[str],
    ) -> ForwardingConstruct:
        """
        Swap the stored definition of an installed construct.

        Only the listed LTP ids are detached and attached. Unchanged LTPs keep
        their service interfaces and reference counts.
        """
        attach = list(attach)
        detach = list(detach)
        with self.claim(fcs=[fc.id or ""], ltps=attach + detach), self._lock:
            current = self._fcs.get(fc.id or "")
            if current is None:
                raise ValidationError(f"forwarding construct {fc.id} does not exist")
            for ltp_id in detach:
                self._detach(current.id or "", ltp_id)
            for ltp_id in attach:
                ltp = fc.ltp(ltp_id)
                if ltp is None:
                    raise ValidationError(f"LTP {ltp_id} is not part of {fc.id}")
                self._attach(current.id or "", ltp)
            stored = copy.deepcopy(fc)
            stored.ref_count = current.ref_count
            self._fcs[current.id or ""] = stored
            return self._fc_snapshot(current.id or "")

    def release_fc(self, fc_id: str) -> ForwardingConstruct:
        """Detach every LTP of an installed construct and drop it from the pool."""
        with self.claim(fcs=[fc_id]):
            with self._lock:
                current = self._fcs.get(fc_id)
                if current is None:
                    raise ValidationError(f"forwarding construct {fc_id} does not exist")
                ltp_ids = current.ltp_ids()
            # claims are never taken while _lock is held
            with self.claim(ltps=ltp_ids), self._lock:
                for ltp_id in ltp_ids:
                    self._detach(fc_id, ltp_id)
                return copy.deepcopy(self._fcs.pop(fc_id))

    def adjust_fc_ref(self, fc_id: str, delta: int) -> int:
        with self._lock:
            current = self._fcs.get(fc_id)
            if current is None:
                raise ValidationError(f"forwarding construct {fc_id} does not exist")
            current.ref_count = max(0, current.ref_count + delta)
            return current.ref_count

    def get_fc(self, fc_id: str) -> Optional[ForwardingConstruct]:
        with self._lock:
            if fc_id not in self._fcs:
                return None
            return self._fc_snapshot(fc_id)

    def fcs(self) -> List[ForwardingConstruct]:
        with self._lock:
            return [self._fc_snapshot(k) for k in sorted(self._fcs)]

    def fc_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._fcs)

    # EVCs

    def put_evc(self, evc: VirtualConnection) -> VirtualConnection:
        if not evc.id:
            raise ValidationError("EVC has no id")
        with self._lock:
            self._evcs[evc.id] = copy.deepcopy(evc)
            return copy.deepcopy(evc)

    def pop_evc(self, evc_id: str) -> Optional[VirtualConnection]:
        with self._lock:
            return self._evcs.pop(evc_id, None)

    def get_evc(self, evc_id: str) -> Optional[VirtualConnection]:
        with self._lock:
            evc = self._evcs.get(evc_id)
            return copy.deepcopy(evc) if evc is not None else None

    def evcs(self) -> List[VirtualConnection]:
        with self._lock:
            return [copy.deepcopy(self._evcs[k]) for k in sorted(self._evcs)]

    # internals, called with _lock held

    def _attach(self, fc_id: str, ltp: LogicalTerminationPoint) -> None:
        entry = self._ltps.get(ltp.id)
        if entry is None:
            pooled = global_interface(ltp.ni)
            if isinstance(pooled, Uni):
                pooled = self._unis.setdefault(ltp.id, pooled)
                self.removed_uni_ids.discard(ltp.id)
            entry = LogicalTerminationPoint(ni=pooled, cfg_id=ltp.id)
            self._ltps[ltp.id] = entry
            self.removed_ltp_ids.discard(ltp.id)
            logger.info("created global %s LTP %s on first use", ltp.type.value, ltp.id)
        entry.ni.add_service_ni(fc_id, copy.deepcopy(ltp.ni))  # type: ignore[union-attr, arg-type]
        self._ref_counts[ltp.id] = self._ref_counts.get(ltp.id, 0) + 1

    def _detach(self, fc_id: str, ltp_id: str) -> None:
        entry = self._ltps.get(ltp_id)
        if entry is not None:
            entry.ni.remove_service_ni(fc_id)  # type: ignore[union-attr]
        count = self._ref_counts.get(ltp_id, 0)
        if count <= 0:
            logger.error("reference count of %s would drop below zero, releasing %s", ltp_id, fc_id)
            return
        self._ref_counts[ltp_id] = count - 1

    def _uni_snapshot(self, uni_id: str) -> Uni:
        snap = copy.deepcopy(self._unis[uni_id])
        snap.ref_count = self._ref_counts.get(uni_id, 0)
        return snap

    def _ltp_snapshot(self, ltp_id: str) -> LogicalTerminationPoint:
        snap = copy.deepcopy(self._ltps[ltp_id])
        snap.ref_count = self._ref_counts.get(ltp_id, 0)
        snap.ni.ref_count = snap.ref_count
        return snap

    def _fc_snapshot(self, fc_id: str) -> ForwardingConstruct:
        return copy.deepcopy(self._fcs[fc_id])
