"""Two-level category paths encoded as strings.

A category is either a parent (``"Food"``) or a parent plus subcategory joined
by :data:`CATEGORY_DELIMITER` (``"Food > Restaurants"``). Paths are plain
strings on transactions, rules and budgets; this module parses, validates and
groups them.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import NamedTuple

CATEGORY_DELIMITER = " > "


class CategoryParts(NamedTuple):
    parent: str | None
    subcategory: str | None


@dataclass(slots=True)
class CategoryNode:
    name: str
    full_path: str
    children: list[CategoryNode] = field(default_factory=list)


def normalize_name(name: str) -> str:
    """Return ``name`` trimmed with internal whitespace collapsed."""

    return " ".join(name.strip().split())


def parse_category(path: str | None) -> CategoryParts:
    """Split ``path`` into ``(parent, subcategory)``.

    Segments are trimmed. ``None`` or an empty string yields
    ``(None, None)``. Paths with more than one delimiter are not valid (see
    :func:`is_valid_category_path`); only their first two segments are read.
    """

    if not path:
        return CategoryParts(None, None)
    parts = [p.strip() for p in path.split(CATEGORY_DELIMITER)]
    if len(parts) == 1:
        return CategoryParts(parts[0], None)
    return CategoryParts(parts[0], parts[1])


def build_category_path(parent: str, subcategory: str | None = None) -> str:
    if not subcategory:
        return parent
    return f"{parent}{CATEGORY_DELIMITER}{subcategory}"


def full_path(path: str | None) -> str | None:
    """Return the canonical (segment-trimmed) form of ``path``."""

    parent, sub = parse_category(path)
    if parent is None:
        return None
    return build_category_path(parent, sub)


def is_valid_category_path(path: str | None) -> bool:
    if not path or not path.strip():
        return False
    parts = [p.strip() for p in path.split(CATEGORY_DELIMITER)]
    if len(parts) > 2:
        return False
    return all(parts)


def get_parent_category(path: str | None) -> str | None:
    return parse_category(path).parent


def get_subcategory(path: str | None) -> str | None:
    return parse_category(path).subcategory


def has_subcategory(path: str | None) -> bool:
    return bool(path) and CATEGORY_DELIMITER in path


def build_category_tree(paths: Iterable[str | None]) -> list[CategoryNode]:
    """Group ``paths`` into a sorted parent/children tree.

    Parents and children are sorted lexicographically; a subcategory listed
    more than once under the same parent appears once.
    """

    nodes: dict[str, CategoryNode] = {}
    for path in paths:
        parent, sub = parse_category(path)
        if not parent:
            continue
        node = nodes.setdefault(parent, CategoryNode(name=parent, full_path=parent))
        if sub and all(child.name != sub for child in node.children):
            node.children.append(
                CategoryNode(name=sub, full_path=build_category_path(parent, sub))
            )

    tree = sorted(nodes.values(), key=lambda n: n.name)
    for node in tree:
        node.children.sort(key=lambda n: n.name)
    return tree


def get_parent_categories(paths: Iterable[str | None]) -> list[str]:
    return sorted({p for p in (parse_category(x).parent for x in paths) if p})


def get_subcategories_for_parent(paths: Iterable[str | None], parent: str) -> list[str]:
    subs: set[str] = set()
    for path in paths:
        p, sub = parse_category(path)
        if p == parent and sub:
            subs.add(sub)
    return sorted(subs)


def filter_by_parent(paths: Iterable[str], parent: str) -> list[str]:
    return [p for p in paths if parse_category(p).parent == parent]


def matches_category(
    tx_category: str | None,
    filter_category: str,
    *,
    include_children: bool = True,
) -> bool:
    """Return whether a transaction category satisfies a category filter.

    An exact path match always matches. A parent-only filter also matches
    every subcategory of that parent unless ``include_children`` is false.
    """

    if not tx_category:
        return False
    tx = parse_category(tx_category)
    flt = parse_category(filter_category)
    if tx == flt:
        return True
    if include_children and flt.subcategory is None:
        return tx.parent == flt.parent
    return False


def sort_categories_hierarchically(paths: Iterable[str | None]) -> list[str]:
    """Flatten the category tree: each parent followed by its children."""

    out: list[str] = []
    for node in build_category_tree(paths):
        out.append(node.full_path)
        out.extend(child.full_path for child in node.children)
    return out


__all__ = [
    "CATEGORY_DELIMITER",
    "CategoryParts",
    "CategoryNode",
    "normalize_name",
    "parse_category",
    "build_category_path",
    "full_path",
    "is_valid_category_path",
    "get_parent_category",
    "get_subcategory",
    "has_subcategory",
    "build_category_tree",
    "get_parent_categories",
    "get_subcategories_for_parent",
    "filter_by_parent",
    "matches_category",
    "sort_categories_hierarchically",
]
