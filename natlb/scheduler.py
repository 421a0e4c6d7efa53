"""Weighted round-robin selection of real servers.

A service handed to the scheduler exposes ``rs_list`` (servers with a
``weight``, in scheduling order) and ``sched_data`` (a dict keyed by lcore).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from natlb.packet import NotFoundError


def gcd(a: int, b: int) -> int:
    """Greatest common divisor of two positive integers."""
    if a < b:
        a, b = b, a
    while (remainder := a % b) != 0:
        a, b = b, remainder
    return b


@dataclass
class WrrState:
    """Per-lcore scheduling position of one service."""

    current: Any = None
    cw: int = 0
    mw: int = 0
    di: int = 1


def _gcd_weight(servers) -> int:
    result = 0
    for weight in (rs.weight for rs in servers if rs.weight > 0):
        result = gcd(weight, result) if result > 0 else weight
    return result or 1


def _max_weight(servers) -> int:
    return max([0, *(rs.weight for rs in servers)])


class WrrScheduler:
    """Weighted round robin: each server is picked in proportion to its weight."""

    name = "wrr"

    def init_service(self, svc) -> None:
        """Reset the scheduling state of ``svc`` on every lcore."""
        svc.sched_data = {}

    def update_service(self, svc) -> None:
        """Recompute weights after the server list of ``svc`` changed."""
        for state in svc.sched_data.values():
            self._refresh(state, svc.rs_list)

    @staticmethod
    def _refresh(state: WrrState, servers) -> None:
        state.di = _gcd_weight(servers)
        state.mw = _max_weight(servers)
        state.cw = state.mw

    def _state(self, svc, lcore_id: int) -> WrrState:
        state = svc.sched_data.get(lcore_id)
        if state is None:
            state = WrrState()
            self._refresh(state, svc.rs_list)
            svc.sched_data[lcore_id] = state
        return state

    def schedule(self, svc, lcore_id: int):
        """Return the next server for ``lcore_id``, or None if none can serve."""
        state = self._state(svc, lcore_id)
        servers = list(svc.rs_list)
        if state.mw == 0 or not any(rs.weight > 0 for rs in servers):
            return None

        start = next((pos + 1 for pos, rs in enumerate(servers) if rs is state.current), 0)
        while True:
            for rs in servers[start:]:
                if rs.weight >= state.cw:
                    state.current = rs
                    return rs
            start = 0
            state.cw -= state.di
            if state.cw <= 0:
                state.cw = state.mw


_SCHEDULERS = {WrrScheduler.name: WrrScheduler()}


def get_scheduler(name: str) -> WrrScheduler:
    """Return the scheduler registered under ``name``."""
    try:
        return _SCHEDULERS[name]
    except KeyError:
        raise NotFoundError(f"unknown scheduler {name!r}") from None