"""
Resource graph.

This module converts resource declarations into a graph representation that
the planner and executor can reason about.

Design goals
1. Keep this deterministic and pure. No provider calls, no state access.
2. Fail early. Every configuration problem is raised here, before planning.
3. Make ordering reproducible. Ties are broken by the address string.

What is a ResourceGraph
- nodes: address -> ResourceInstance
- dependencies: address -> set of addresses it consumes attributes from
- dependents: the reverse map

Expansion
A declaration with for_each becomes one node per element before references
are resolved. A list element is both key and value. A mapping entry gives key
and value.
"""

from __future__ import annotations

import heapq
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from cluster_orchestrator.core.errors import (
    CyclicDependencyError,
    PlanConflictError,
    UnresolvedReferenceError,
)
from cluster_orchestrator.core.types import (
    Reference,
    ResourceAddress,
    ResourceDeclaration,
    ResourceInstance,
)
from cluster_orchestrator.graph.references import (
    EXPR_RE,
    EachContext,
    find_references,
    substitute_locals,
)
from cluster_orchestrator.resources.schemas import SchemaRegistry, default_schemas


@dataclass
class ResourceGraph:
    """
    ResourceGraph is the in memory dependency graph.

    An edge a -> b in dependencies means a consumes something from b,
    so b must be applied first.
    """

    nodes: Dict[ResourceAddress, ResourceInstance]
    dependencies: Dict[ResourceAddress, Set[ResourceAddress]] = field(default_factory=dict)
    dependents: Dict[ResourceAddress, Set[ResourceAddress]] = field(default_factory=dict)

    def dependencies_of(self, address: ResourceAddress) -> Set[ResourceAddress]:
        return self.dependencies.get(address, set())

    def dependents_of(self, address: ResourceAddress) -> Set[ResourceAddress]:
        return self.dependents.get(address, set())

    def depths(self) -> Dict[ResourceAddress, int]:
        """
        Return the depth of every node.

        Roots have depth 0. Any other node sits one level below its deepest
        dependency.
        """
        depth: Dict[ResourceAddress, int] = {}
        for addr in self.topological_order():
            deps = self.dependencies_of(addr)
            depth[addr] = 1 + max(depth[d] for d in deps) if deps else 0
        return depth

    def topological_order(self) -> List[ResourceAddress]:
        """
        Return every node after all of its dependencies.

        Kahn's algorithm over a heap keyed by (level, address string).
        The level is assigned when a node becomes ready, so the result is
        ordered by depth first and identity second.
        """
        remaining = {addr: len(self.dependencies_of(addr)) for addr in self.nodes}
        level: Dict[ResourceAddress, int] = {}
        heap: List[Tuple[int, str, ResourceAddress]] = []

        for addr, count in remaining.items():
            if count == 0:
                level[addr] = 0
                heapq.heappush(heap, (0, str(addr), addr))

        order: List[ResourceAddress] = []
        while heap:
            lvl, _, addr = heapq.heappop(heap)
            order.append(addr)
            for dep in self.dependents_of(addr):
                level[dep] = max(level.get(dep, 0), lvl + 1)
                remaining[dep] -= 1
                if remaining[dep] == 0:
                    heapq.heappush(heap, (level[dep], str(dep), dep))

        if len(order) != len(self.nodes):
            raise CyclicDependencyError(
                find_cycle(self.nodes, self.dependencies) or sorted(str(a) for a in self.nodes)
            )

        return order

    def components(self) -> List[Set[ResourceAddress]]:
        """Return weakly connected components, sorted by their smallest address."""
        seen: Set[ResourceAddress] = set()
        result: List[Set[ResourceAddress]] = []
        for start in sorted(self.nodes, key=str):
            if start in seen:
                continue
            comp: Set[ResourceAddress] = set()
            stack = [start]
            while stack:
                cur = stack.pop()
                if cur in comp:
                    continue
                comp.add(cur)
                stack.extend(self.dependencies_of(cur) - comp)
                stack.extend(self.dependents_of(cur) - comp)
            seen |= comp
            result.append(comp)
        return result


def find_cycle(
    nodes: Iterable[ResourceAddress],
    edges: Dict[ResourceAddress, Set[ResourceAddress]],
) -> Optional[List[str]]:
    """
    Return one cycle as a list of address strings, first node repeated at the end.

    Iterative depth first search with white, grey, black colouring.
    Nodes and edges are visited in address order so the reported cycle is stable.
    """
    white, grey, black = 0, 1, 2
    colour = {n: white for n in nodes}

    for root in sorted(colour, key=str):
        if colour[root] != white:
            continue

        path: List[ResourceAddress] = [root]
        iters = [iter(sorted(edges.get(root, ()), key=str))]
        colour[root] = grey

        while iters:
            nxt = next(iters[-1], None)
            if nxt is None:
                colour[path.pop()] = black
                iters.pop()
                continue
            if colour.get(nxt, black) == grey:
                start = path.index(nxt)
                return [str(a) for a in path[start:]] + [str(nxt)]
            if colour.get(nxt) == white:
                colour[nxt] = grey
                path.append(nxt)
                iters.append(iter(sorted(edges.get(nxt, ()), key=str)))

    return None


def _expand_for_each(
    decl: ResourceDeclaration,
    variables: Dict[str, Any],
) -> Optional[List[EachContext]]:
    """
    Return the for_each elements of a declaration, or None for a single resource.

    for_each may be a literal list, a literal mapping, or an expression that
    evaluates to one of those.
    """

    if decl.for_each is None:
        return None

    raw = substitute_locals(decl.for_each, variables, None, decl.label)
    if isinstance(raw, str) and EXPR_RE.search(raw):
        raise UnresolvedReferenceError(
            "for_each may only use variables and literals", address=decl.label
        )

    elements: List[EachContext] = []
    if isinstance(raw, dict):
        for k, v in raw.items():
            elements.append(EachContext(key=str(k), value=v))
    elif isinstance(raw, list):
        for v in raw:
            if isinstance(v, (dict, list)):
                raise UnresolvedReferenceError(
                    "for_each list elements must be scalars", address=decl.label
                )
            elements.append(EachContext(key=str(v), value=v))
    else:
        raise UnresolvedReferenceError(
            f"for_each must be a list or mapping, got {type(raw).__name__}",
            address=decl.label,
        )

    keys = [e.key for e in elements]
    dupes = sorted({k for k in keys if keys.count(k) > 1})
    if dupes:
        raise PlanConflictError(
            f"for_each produces duplicate keys: {', '.join(dupes)}", address=decl.label
        )

    return elements


def expand_declarations(
    declarations: Iterable[ResourceDeclaration],
    variables: Dict[str, Any],
) -> Dict[ResourceAddress, ResourceInstance]:
    """
    Expand declarations into instances keyed by address.

    Raises PlanConflictError when two declarations claim the same identity.
    Variable and each expressions are substituted here.
    """

    instances: Dict[ResourceAddress, ResourceInstance] = {}
    seen: Set[Tuple[str, str]] = set()

    for decl in declarations:
        if (decl.type, decl.name) in seen:
            raise PlanConflictError("declared more than once", address=decl.label)
        seen.add((decl.type, decl.name))

        elements = _expand_for_each(decl, variables)
        if elements is None:
            addr = ResourceAddress(type=decl.type, name=decl.name)
            attrs = substitute_locals(decl.attributes, variables, None, decl.label)
            instances[addr] = ResourceInstance(
                address=addr, attributes=attrs, lifecycle=decl.lifecycle
            )
            continue

        for each in elements:
            addr = ResourceAddress(type=decl.type, name=decl.name, key=each.key)
            attrs = substitute_locals(decl.attributes, variables, each, str(addr))
            instances[addr] = ResourceInstance(
                address=addr, attributes=attrs, lifecycle=decl.lifecycle
            )

    return instances


def _resolve_depends_on(
    entry: str,
    where: ResourceAddress,
    by_decl: Dict[Tuple[str, str], List[ResourceAddress]],
) -> List[ResourceAddress]:
    try:
        target = ResourceAddress.parse(entry)
    except ValueError as e:
        raise UnresolvedReferenceError(str(e), address=str(where)) from e

    members = by_decl.get(target.declaration)
    if members is None:
        raise UnresolvedReferenceError(
            f"depends_on names unknown resource {entry}", address=str(where)
        )
    if target.key is None:
        return list(members)
    if target not in members:
        raise UnresolvedReferenceError(
            f"depends_on names unknown instance {entry}", address=str(where)
        )
    return [target]


def build_resource_graph(
    declarations: Iterable[ResourceDeclaration],
    variables: Optional[Dict[str, Any]] = None,
    schemas: Optional[SchemaRegistry] = None,
) -> ResourceGraph:
    """
    Build a ResourceGraph from declarations.

    Behavior
    1. Expand for_each declarations into instances.
    2. Parse references in instance attributes and validate them.
       The target instance must exist, unkeyed references must point to a
       single resource, and the attribute must be declared on the target or
       be a computed output of its type.
    3. Add depends_on edges. An unkeyed depends_on on a for_each declaration
       means every instance.
    4. Reject cycles.
    """

    variables = dict(variables or {})
    schemas = schemas or default_schemas()
    decl_list = list(declarations)

    nodes = expand_declarations(decl_list, variables)

    by_decl: Dict[Tuple[str, str], List[ResourceAddress]] = {}
    keyed: Set[Tuple[str, str]] = set()
    for decl in decl_list:
        if decl.for_each is not None:
            keyed.add((decl.type, decl.name))
    for addr in sorted(nodes, key=str):
        by_decl.setdefault(addr.declaration, []).append(addr)

    depends_on = {(d.type, d.name): d.depends_on for d in decl_list}

    g = ResourceGraph(nodes=nodes)
    for addr in nodes:
        g.dependencies[addr] = set()
        g.dependents[addr] = set()

    for addr, inst in sorted(nodes.items(), key=lambda kv: str(kv[0])):
        refs: List[Reference] = []

        for parsed in find_references(inst.attributes, str(addr)):
            target = parsed.address
            decl_key = target.declaration

            if decl_key not in by_decl:
                raise UnresolvedReferenceError(
                    f"reference to unknown resource {target.type}.{target.name}", address=str(addr)
                )
            if target.key is None and decl_key in keyed:
                raise UnresolvedReferenceError(
                    f"{target.type}.{target.name} uses for_each, reference a specific instance",
                    address=str(addr),
                )
            if target.key is not None and decl_key not in keyed:
                raise UnresolvedReferenceError(
                    f"{target.type}.{target.name} does not use for_each and has no instance keys",
                    address=str(addr),
                )
            if target not in nodes:
                raise UnresolvedReferenceError(
                    f"reference to unknown instance {target}", address=str(addr)
                )

            known = set(nodes[target].attributes) | schemas.for_type(target.type).computed()
            if parsed.attribute not in known:
                raise UnresolvedReferenceError(
                    f"{target} has no attribute {parsed.attribute!r}",
                    address=str(addr),
                )

            refs.append(Reference(target=target, attribute=parsed.attribute))

        for entry in depends_on.get(addr.declaration, []):
            for target in _resolve_depends_on(entry, addr, by_decl):
                refs.append(Reference(target=target))

        inst.references = refs
        for ref in refs:
            if ref.target == addr:
                raise CyclicDependencyError([str(addr), str(addr)])
            g.dependencies[addr].add(ref.target)
            g.dependents[ref.target].add(addr)

    cycle = find_cycle(g.nodes, g.dependencies)
    if cycle is not None:
        raise CyclicDependencyError(cycle)

    return g
