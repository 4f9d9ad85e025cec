"""GraphQL connection detection and pagination extraction."""

from typing import Any, Dict, List, Optional

from graphstage.catalog.models import PaginationInfo

CONNECTION_LIST_KEYS = {"nodes", "edges"}
CONNECTION_META_KEYS = {"pageInfo", "totalCount", "__typename"}


def is_connection(value: Any) -> bool:
    """
    Check whether a value looks like a cursor-paginated GraphQL connection.

    A connection is an object holding a `nodes` or `edges` list and
    nothing besides page metadata.
    """
    if not isinstance(value, dict):
        return False
    if not any(isinstance(value.get(key), list) for key in CONNECTION_LIST_KEYS):
        return False
    return set(value) <= CONNECTION_LIST_KEYS | CONNECTION_META_KEYS


def connection_elements(value: Dict[str, Any]) -> List[Any]:
    """The entity objects of a connection, unwrapping `edges[].node`."""
    nodes = value.get("nodes")
    if isinstance(nodes, list):
        return nodes
    elements = []
    for edge in value.get("edges") or []:
        if isinstance(edge, dict) and "node" in edge:
            elements.append(edge["node"])
        else:
            elements.append(edge)
    return elements


def extract_pagination(value: Dict[str, Any]) -> PaginationInfo:
    page_info = value.get("pageInfo")
    if not isinstance(page_info, dict):
        page_info = {}

    start_cursor = page_info.get("startCursor")
    end_cursor = page_info.get("endCursor")
    edges = value.get("edges")
    if isinstance(edges, list) and edges:
        # Edge cursors stand in for a missing pageInfo
        if start_cursor is None and isinstance(edges[0], dict):
            start_cursor = edges[0].get("cursor")
        if end_cursor is None and isinstance(edges[-1], dict):
            end_cursor = edges[-1].get("cursor")

    total_count = value.get("totalCount")
    return PaginationInfo(
        has_next_page=bool(page_info.get("hasNextPage", False)),
        has_previous_page=bool(page_info.get("hasPreviousPage", False)),
        current_count=len(connection_elements(value)),
        total_count=total_count if isinstance(total_count, int) else None,
        end_cursor=str(end_cursor) if end_cursor is not None else None,
        start_cursor=str(start_cursor) if start_cursor is not None else None,
    )


def merge_pagination(pages: List[PaginationInfo]) -> Optional[PaginationInfo]:
    """
    Combine the pagination of one connection field seen under several parent rows.

    Cursors are only kept when a single connection was observed, since
    they cannot address several parents at once.
    """
    if not pages:
        return None
    if len(pages) == 1:
        return pages[0]

    totals = [page.total_count for page in pages]
    return PaginationInfo(
        has_next_page=any(page.has_next_page for page in pages),
        has_previous_page=any(page.has_previous_page for page in pages),
        current_count=sum(page.current_count for page in pages),
        total_count=sum(totals) if all(t is not None for t in totals) else None,
    )
