"""
Packet node backend interfaces.

Goal
Define a stable interface for programming packet nodes without binding the
orchestrator to a specific controller or transport.

Design notes
Every operation returns a concurrent.futures.Future that completes when the
devices acknowledge the change, or fails with the device error.
The orchestrator waits on each future with a timeout and treats a timeout
as a failure, see wait_for.

set_node_forwarding has upsert semantics: calling it again for the same
(construct, source interface) replaces the previous destination set.
"""

from __future__ import annotations

import concurrent.futures
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

from carrier_ethernet.core.errors import BackendFailure
from carrier_ethernet.core.types import ForwardingConstruct, NetworkInterface, Uni


@dataclass(frozen=True)
class BackendConfig:
    """
    Backend call configuration.

    timeout_seconds
    Upper bound on the wait for one backend acknowledgement.
    A call that does not complete in time counts as failed and is rolled back.
    """

    timeout_seconds: float = 5.0


class PacketNodeBackend(Protocol):
    """
    Backend interface expected by the orchestrators.

    Forwarding
    set_node_forwarding programs traffic entering src_ni for fc towards dst_nis.
    remove_node_forwarding removes the entries programmed for one source.
    remove_all_forwarding_resources removes everything programmed for fc.

    Bandwidth
    create allocates meter resources for a UNI of fc.
    apply binds them to the UNI ingress, create must have completed first.
    remove unbinds and releases them.
    """

    def set_node_forwarding(
        self,
        fc: ForwardingConstruct,
        src_ni: NetworkInterface,
        dst_nis: Sequence[NetworkInterface],
    ) -> concurrent.futures.Future[None]:
        """Program forwarding for one source interface."""

    def remove_node_forwarding(
        self,
        fc: ForwardingConstruct,
        src_ni: NetworkInterface,
    ) -> concurrent.futures.Future[None]:
        """Remove forwarding for one source interface."""

    def create_bandwidth_profile_resources(
        self,
        fc: ForwardingConstruct,
        uni: Uni,
    ) -> concurrent.futures.Future[None]:
        """Allocate meter resources."""

    def apply_bandwidth_profile_resources(
        self,
        fc: ForwardingConstruct,
        uni: Uni,
    ) -> concurrent.futures.Future[None]:
        """Bind allocated meter resources."""

    def remove_bandwidth_profile_resources(
        self,
        fc: ForwardingConstruct,
        uni: Uni,
    ) -> concurrent.futures.Future[None]:
        """Unbind and release meter resources."""

    def remove_all_forwarding_resources(self, fc: ForwardingConstruct) -> concurrent.futures.Future[None]:
        """Remove every forwarding entry of fc."""


def completed(error: Optional[BaseException] = None) -> concurrent.futures.Future[None]:
    """Return an already finished future, failed when error is given."""
    fut: concurrent.futures.Future[None] = concurrent.futures.Future()
    if error is None:
        fut.set_result(None)
    else:
        fut.set_exception(error)
    return fut


def wait_for(
    future: concurrent.futures.Future[None],
    timeout: float,
    action: str,
    cancel: bool = True,
) -> None:
    """
    Wait for a backend acknowledgement.

    Raises BackendFailure when the call failed or did not complete within timeout.
    With cancel set, a timed out future is cancelled when it has not started yet.
    Removals pass cancel=False so a late acknowledgement still releases the
    resource.
    """
    try:
        future.result(timeout=timeout)
    except concurrent.futures.TimeoutError as exc:
        if cancel:
            future.cancel()
        raise BackendFailure(f"{action} timed out after {timeout:.2f}s") from exc
    except concurrent.futures.CancelledError as exc:
        raise BackendFailure(f"{action} was cancelled") from exc
    except BackendFailure:
        raise
    except Exception as exc:
        raise BackendFailure(f"{action} failed: {exc}") from exc
