"""
Entity kinds and their dependency graph.

Sync order is derived from declared dependencies, never hard-coded:

    items, customers   (no dependencies)
    invoices           (customers, items)
    payments           (invoices, customers)
"""

from collections.abc import Iterable, Mapping
from enum import Enum

from qbo_sync.errors import DependencyCycleError, UnknownEntityError


class EntityKind(str, Enum):
    """Entities synchronized with QuickBooks Online."""

    CUSTOMER = "customers"
    ITEM = "items"
    INVOICE = "invoices"
    PAYMENT = "payments"

    @property
    def dependencies(self) -> frozenset["EntityKind"]:
        return DEPENDENCIES[self]

    @property
    def priority(self) -> int:
        """Dependency depth: 1 for leaves, 1 + deepest dependency otherwise."""
        return dependency_depth(self, DEPENDENCIES)

    @property
    def qbo_name(self) -> str:
        """Entity name used in QBO queries, URLs and webhooks."""
        return QBO_NAMES[self]

    @property
    def table(self) -> str:
        """Internal table holding this entity."""
        return TABLES[self]

    @classmethod
    def from_qbo_name(cls, name: str) -> "EntityKind | None":
        """Map a webhook entity name ("Invoice") to a kind, if supported."""
        for kind, qbo_name in QBO_NAMES.items():
            if qbo_name == name:
                return kind
        return None


DEPENDENCIES: dict[EntityKind, frozenset[EntityKind]] = {
    EntityKind.CUSTOMER: frozenset(),
    EntityKind.ITEM: frozenset(),
    EntityKind.INVOICE: frozenset({EntityKind.CUSTOMER, EntityKind.ITEM}),
    EntityKind.PAYMENT: frozenset({EntityKind.INVOICE, EntityKind.CUSTOMER}),
}

QBO_NAMES: dict[EntityKind, str] = {
    EntityKind.CUSTOMER: "Customer",
    EntityKind.ITEM: "Item",
    EntityKind.INVOICE: "Invoice",
    EntityKind.PAYMENT: "Payment",
}

TABLES: dict[EntityKind, str] = {
    EntityKind.CUSTOMER: "customer_profile",
    EntityKind.ITEM: "item_record",
    EntityKind.INVOICE: "invoice_record",
    EntityKind.PAYMENT: "invoice_payment",
}

INVOICE_LINE_TABLE = "invoice_line_item"

# Default request order when a caller names no entities
ALL_ENTITIES: tuple[EntityKind, ...] = (
    EntityKind.ITEM,
    EntityKind.CUSTOMER,
    EntityKind.INVOICE,
    EntityKind.PAYMENT,
)


def parse_entities(names: Iterable[str] | None) -> list[EntityKind]:
    """
    Validate entity names from a request.

    Accepts plural ("invoices") or QBO ("Invoice") spellings.

    Raises:
        UnknownEntityError: listing every name that did not match
    """
    if names is None:
        return list(ALL_ENTITIES)

    kinds: list[EntityKind] = []
    invalid: list[str] = []
    for name in names:
        if isinstance(name, EntityKind):
            kind = name
        else:
            kind = EntityKind.from_qbo_name(name)
            if kind is None:
                try:
                    kind = EntityKind(name.lower())
                except ValueError:
                    invalid.append(name)
                    continue
        if kind not in kinds:
            kinds.append(kind)

    if invalid:
        raise UnknownEntityError(invalid)
    return kinds


def dependency_depth(
    kind: EntityKind,
    graph: Mapping[EntityKind, Iterable[EntityKind]],
    _visiting: frozenset[EntityKind] = frozenset(),
) -> int:
    if kind in _visiting:
        raise DependencyCycleError(kind.value)
    deps = list(graph.get(kind, ()))
    if not deps:
        return 1
    return 1 + max(dependency_depth(d, graph, _visiting | {kind}) for d in deps)


def topological_sort(
    entities: Iterable[EntityKind],
    graph: Mapping[EntityKind, Iterable[EntityKind]] = DEPENDENCIES,
) -> list[EntityKind]:
    """
    Order entities so every dependency comes before its dependents.

    Only dependencies that are part of the requested set are followed;
    a requested invoice sync does not pull in customers on its own.

    Raises:
        DependencyCycleError: if the graph has a cycle among the requested set
    """
    requested = list(entities)
    requested_set = set(requested)
    ordered: list[EntityKind] = []
    visited: set[EntityKind] = set()
    visiting: set[EntityKind] = set()

    def visit(kind: EntityKind) -> None:
        if kind in visited:
            return
        if kind in visiting:
            raise DependencyCycleError(kind.value)

        visiting.add(kind)
        # Sorted for a deterministic order between siblings
        for dep in sorted(graph.get(kind, ()), key=lambda k: k.value):
            if dep in requested_set:
                visit(dep)
        visiting.discard(kind)

        visited.add(kind)
        ordered.append(kind)

    for kind in requested:
        visit(kind)

    return ordered


def priority_groups(
    entities: Iterable[EntityKind],
    graph: Mapping[EntityKind, Iterable[EntityKind]] = DEPENDENCIES,
) -> list[list[EntityKind]]:
    """
    Group topologically sorted entities by dependency depth.

    Groups must run in order; members of one group may run concurrently.
    """
    ordered = topological_sort(entities, graph)
    groups: dict[int, list[EntityKind]] = {}
    for kind in ordered:
        groups.setdefault(dependency_depth(kind, graph), []).append(kind)
    return [groups[depth] for depth in sorted(groups)]
