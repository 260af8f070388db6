"""
Bandwidth profile manager.

Two phase admission of UNI bandwidth profiles on the packet nodes.

Phases
requested  a create was sent and has not been acknowledged
create     allocate meter resources for (construct, UNI)
apply      bind them to the UNI ingress, only after create succeeded
remove     unbind and release, a no op when nothing was requested

Every phase is idempotent per (construct id, UNI id). The manager remembers
which phase each pair reached, so a repeated call does not reach the backend.

Important
A create that fails or times out may still complete on the device later.
The pair is marked requested before waiting and a removal is issued right
away, which the backend runs after the late create. A pair whose removal was
not acknowledged stays requested, so a later remove sends it again.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Dict, Optional, Tuple

from carrier_ethernet.backend.base import BackendConfig, PacketNodeBackend, wait_for
from carrier_ethernet.core.errors import BackendFailure, ResourceConflictError
from carrier_ethernet.core.types import ForwardingConstruct, Uni

logger = logging.getLogger(__name__)


class BandwidthPhase(str, Enum):
    requested = "requested"
    created = "created"
    applied = "applied"


class BandwidthProfileManager:
    def __init__(self, backend: PacketNodeBackend, config: Optional[BackendConfig] = None) -> None:
        self._backend = backend
        self._config = config or BackendConfig()
        self._phases: Dict[Tuple[str, str], BandwidthPhase] = {}
        self._lock = threading.Lock()

    def phase(self, fc_id: str, uni_id: str) -> Optional[BandwidthPhase]:
        with self._lock:
            return self._phases.get((fc_id, uni_id))

    def _set_phase(self, key: Tuple[str, str], phase: BandwidthPhase) -> None:
        with self._lock:
            self._phases[key] = phase

    def create(self, fc: ForwardingConstruct, uni: Uni) -> None:
        key = (fc.id or "", uni.id)
        if self.phase(*key) in (BandwidthPhase.created, BandwidthPhase.applied):
            return
        self._set_phase(key, BandwidthPhase.requested)
        try:
            wait_for(
                self._backend.create_bandwidth_profile_resources(fc, uni),
                self._config.timeout_seconds,
                f"create bandwidth resources for {uni.id} in {fc.id}",
            )
        except BackendFailure as exc:
            logger.warning("%s, releasing whatever the device allocated", exc)
            try:
                self._release(fc, uni)
            except BackendFailure as cleanup:
                logger.error("release after failed create left %s requested: %s", key, cleanup)
            raise
        self._set_phase(key, BandwidthPhase.created)
        logger.debug("created bandwidth resources for %s in %s", uni.id, fc.id)

    def apply(self, fc: ForwardingConstruct, uni: Uni) -> None:
        key = (fc.id or "", uni.id)
        current = self.phase(*key)
        if current is BandwidthPhase.applied:
            return
        if current is not BandwidthPhase.created:
            raise ResourceConflictError(f"bandwidth resources for {uni.id} in {fc.id} were never created")
        wait_for(
            self._backend.apply_bandwidth_profile_resources(fc, uni),
            self._config.timeout_seconds,
            f"apply bandwidth resources for {uni.id} in {fc.id}",
        )
        self._set_phase(key, BandwidthPhase.applied)
        logger.debug("applied bandwidth resources for %s in %s", uni.id, fc.id)

    def remove(self, fc: ForwardingConstruct, uni: Uni) -> None:
        if self.phase(fc.id or "", uni.id) is None:
            return
        self._release(fc, uni)
        logger.debug("removed bandwidth resources for %s in %s", uni.id, fc.id)

    def _release(self, fc: ForwardingConstruct, uni: Uni) -> None:
        wait_for(
            self._backend.remove_bandwidth_profile_resources(fc, uni),
            self._config.timeout_seconds,
            f"remove bandwidth resources for {uni.id} in {fc.id}",
            cancel=False,
        )
        with self._lock:
            self._phases.pop((fc.id or "", uni.id), None)

    def held(self) -> Dict[Tuple[str, str], BandwidthPhase]:
        """Snapshot of every (construct id, UNI id) holding or requesting resources."""
        with self._lock:
            return dict(self._phases)
