"""Test plan builder: validates check declarations and layers them into phases.

Phase *k* contains every check whose dependencies are all satisfied by
checks in phases ``< k``.  Gateway checks carry their routed services as
implicit dependencies and are never placed in phase 0 while direct service
checks exist, so the direct-connectivity tier always completes before any
request is sent through the shared ingress.

Validation mirrors a DAG compile step:
- No duplicate check names or probe ids
- Every dependency names a declared check
- No cycles (``CyclicDependency`` with the offending path)
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from platform_verify.engine.exceptions import CyclicDependency, DuplicateCheck, UnknownDependency
from platform_verify.engine.models import CheckKind, Phase, ServiceCheck, TestPlan

log = logging.getLogger(__name__)

__all__ = ["TestPlanBuilder", "build_plan"]


class TestPlanBuilder:
    """Compiles an ordered sequence of checks into an immutable ``TestPlan``."""

    __test__ = False

    def build(self, declarations: Sequence[ServiceCheck]) -> TestPlan:
        """Validate ``declarations`` and return their phased plan.

        Raises
        ------
        DuplicateCheck
            If two checks or two probes share a name.
        UnknownDependency
            If a check depends on or routes to an undeclared service.
        CyclicDependency
            If no valid topological order exists.
        """
        checks = {c.service_name: c for c in declarations}
        self._validate(declarations, checks)

        order = self._topological_order(declarations, checks)
        has_direct = any(c.kind is CheckKind.SERVICE for c in declarations)

        layer: dict[str, int] = {}
        for name in order:
            check = checks[name]
            level = max((layer[d] + 1 for d in check.dependencies), default=0)
            if check.kind is CheckKind.GATEWAY and has_direct:
                level = max(level, 1)
            layer[name] = level

        depth = max(layer.values(), default=-1) + 1
        phases = tuple(
            Phase(
                index=k,
                checks=tuple(c for c in declarations if layer[c.service_name] == k),
            )
            for k in range(depth)
        )
        # drop layers left empty by the gateway floor
        phases = tuple(
            Phase(index=i, checks=p.checks) for i, p in enumerate(p for p in phases if p.checks)
        )

        log.info(
            "Built test plan: %d checks in %d phases (%s)",
            len(declarations),
            len(phases),
            "; ".join(",".join(p.service_names) for p in phases),
        )
        return TestPlan(phases=phases)

    @staticmethod
    def _validate(
        declarations: Sequence[ServiceCheck], checks: dict[str, ServiceCheck]
    ) -> None:
        if len(checks) != len(declarations):
            seen: set[str] = set()
            for check in declarations:
                if check.service_name in seen:
                    raise DuplicateCheck(check.service_name)
                seen.add(check.service_name)

        probe_ids: set[str] = set()
        for check in declarations:
            for probe in check.probes:
                if probe.probe_id in probe_ids:
                    raise DuplicateCheck(probe.probe_id)
                probe_ids.add(probe.probe_id)

            for dep in sorted(check.dependencies):
                if dep not in checks:
                    raise UnknownDependency(check.service_name, dep)

    @staticmethod
    def _topological_order(
        declarations: Sequence[ServiceCheck], checks: dict[str, ServiceCheck]
    ) -> list[str]:
        in_degree = {c.service_name: len(c.dependencies) for c in declarations}
        dependents: dict[str, list[str]] = {c.service_name: [] for c in declarations}
        for check in declarations:
            for dep in check.dependencies:
                dependents[dep].append(check.service_name)

        queue = [c.service_name for c in declarations if in_degree[c.service_name] == 0]
        ordered: list[str] = []
        while queue:
            name = queue.pop(0)
            ordered.append(name)
            for dependent in dependents[name]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(ordered) != len(checks):
            remaining = [n for n in checks if n not in set(ordered)]
            raise CyclicDependency(_find_cycle(remaining, checks))
        return ordered


def _find_cycle(remaining: list[str], checks: dict[str, ServiceCheck]) -> list[str]:
    """Return one concrete cycle among ``remaining`` (first node repeated at the end)."""
    pending = set(remaining)
    start = remaining[0]
    path: list[str] = []
    index: dict[str, int] = {}
    node = start
    while node not in index:
        index[node] = len(path)
        path.append(node)
        node = next(d for d in sorted(checks[node].dependencies) if d in pending)
    cycle = path[index[node]:]
    cycle.reverse()
    return [*cycle, cycle[0]]


def build_plan(declarations: Sequence[ServiceCheck]) -> TestPlan:
    """Convenience wrapper around ``TestPlanBuilder().build``."""
    return TestPlanBuilder().build(declarations)
