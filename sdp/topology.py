from __future__ import annotations

import heapq
from dataclasses import replace
from typing import Iterable

from .errors import CyclicDependency, DuplicateService, PortConflict, UnknownDependency
from .models import ServiceDescriptor, Topology


def resolve(descriptors: Iterable[ServiceDescriptor], default_network: str = "default") -> Topology:
    """Validate service descriptors and compute a bring-up order.

    Kahn's algorithm; among services that are ready at the same time the one
    declared first wins, so identical input always yields the same order.
    """
    declared: list[ServiceDescriptor] = []
    by_name: dict[str, ServiceDescriptor] = {}
    for d in descriptors:
        if d.name in by_name:
            raise DuplicateService(d.name)
        if not d.networks:
            d = replace(d, networks=frozenset({default_network}))
        by_name[d.name] = d
        declared.append(d)

    for d in declared:
        for dep in sorted(d.depends_on):
            if dep not in by_name:
                raise UnknownDependency(d.name, dep)

    _check_ports(declared)

    index = {d.name: i for i, d in enumerate(declared)}
    pending = {d.name: len(d.depends_on) for d in declared}
    dependents: dict[str, list[str]] = {d.name: [] for d in declared}
    for d in declared:
        for dep in d.depends_on:
            dependents[dep].append(d.name)

    ready = [(index[n], n) for n, cnt in pending.items() if cnt == 0]
    heapq.heapify(ready)
    order: list[str] = []
    while ready:
        _, name = heapq.heappop(ready)
        order.append(name)
        for child in dependents[name]:
            pending[child] -= 1
            if pending[child] == 0:
                heapq.heappush(ready, (index[child], child))

    if len(order) != len(declared):
        placed = set(order)
        leftover = [d.name for d in declared if d.name not in placed]
        raise CyclicDependency(_find_cycle(leftover, by_name))

    return Topology(
        services={n: by_name[n] for n in order},
        order=tuple(order),
        shared_networks=frozenset(net for d in declared for net in d.networks),
        ranks=_ranks(order, by_name),
    )


def _check_ports(declared: list[ServiceDescriptor]) -> None:
    owners: dict[tuple[int, str], str] = {}
    for d in declared:
        for p in d.ports:
            if p.host is None:
                continue
            key = (p.host, p.protocol)
            if key in owners and owners[key] != d.name:
                raise PortConflict(p.host, owners[key], d.name)
            owners[key] = d.name


def _find_cycle(leftover: list[str], by_name: dict[str, ServiceDescriptor]) -> list[str]:
    """Return one cycle path among services Kahn's algorithm could not place."""
    candidates = set(leftover)
    visiting: list[str] = []
    on_path: set[str] = set()
    done: set[str] = set()

    def visit(name: str) -> list[str] | None:
        visiting.append(name)
        on_path.add(name)
        for dep in sorted(by_name[name].depends_on):
            if dep not in candidates or dep in done:
                continue
            if dep in on_path:
                start = visiting.index(dep)
                return visiting[start:] + [dep]
            found = visit(dep)
            if found:
                return found
        visiting.pop()
        on_path.discard(name)
        done.add(name)
        return None

    for name in leftover:
        if name in done:
            continue
        found = visit(name)
        if found:
            return found
    # Unreachable when leftover is non-empty: every leftover node sits on or behind a cycle.
    return list(leftover)


def _ranks(order: list[str], by_name: dict[str, ServiceDescriptor]) -> tuple[tuple[str, ...], ...]:
    """Group services into levels; level n only depends on levels < n."""
    rank: dict[str, int] = {}
    for name in order:
        deps = by_name[name].depends_on
        rank[name] = 1 + max((rank[d] for d in deps), default=-1)
    levels: dict[int, list[str]] = {}
    for name in order:
        levels.setdefault(rank[name], []).append(name)
    return tuple(tuple(levels[i]) for i in sorted(levels))
