"""Helpers for picking nodes out of GraphQL results before staging them."""

from typing import Any, Dict, List, Optional, Sequence


def _children(node: Dict[str, Any], children_key: str) -> List[Any]:
    children = node.get(children_key)
    return children if isinstance(children, list) else []


def select_best_node(
    nodes: Sequence[Dict[str, Any]],
    term: str,
    name_key: str = "name",
    children_key: str = "interactions",
) -> Optional[Dict[str, Any]]:
    """
    Pick the node matching a search term.

    An exact case-insensitive name match wins; otherwise the node with the
    most children (the first one on ties).

    Args:
        nodes: Candidate nodes, e.g. `data.drugs.nodes`
        term: Name searched for upstream
        name_key: Key holding the node name
        children_key: Key holding the node's child list

    Returns:
        The chosen node, or None for an empty list
    """
    if not nodes:
        return None

    lower_term = term.lower()
    best = nodes[0]
    largest = len(_children(best, children_key))

    for node in nodes:
        name = node.get(name_key)
        if isinstance(name, str) and name.lower() == lower_term:
            return node
        size = len(_children(node, children_key))
        if size > largest:
            best, largest = node, size

    return best


def top_by_score(
    items: Sequence[Dict[str, Any]],
    score_key: str = "interactionScore",
    limit: int = 20,
) -> List[Dict[str, Any]]:
    """Highest-scoring items first (missing scores count as 0); the input is left untouched."""
    def score(item: Dict[str, Any]) -> float:
        value = item.get(score_key)
        return value if isinstance(value, (int, float)) and not isinstance(value, bool) else 0

    return sorted(items, key=score, reverse=True)[:limit]
