"""Read-only statement validation."""

from dataclasses import dataclass, field
from typing import List

import sqlglot
from sqlglot import exp
from sqlglot.errors import ParseError, TokenError

from graphstage.common.errors import DisallowedStatementError, SqlExecutionError

READ_ROOTS = (exp.Select, exp.Union, exp.Intersect, exp.Except)

# Statement nodes that write data, change schema or touch the connection
FORBIDDEN_NODES = (
    exp.Insert,
    exp.Update,
    exp.Delete,
    exp.Merge,
    exp.Create,
    exp.Drop,
    exp.Alter,
    exp.TruncateTable,
    exp.Command,
    exp.Pragma,
    exp.Transaction,
    exp.Commit,
    exp.Rollback,
    exp.Set,
)


@dataclass
class ValidatedStatement:
    sql: str
    tree: exp.Expression
    tables: List[str] = field(default_factory=list)


def referenced_tables(tree: exp.Expression) -> List[str]:
    """Tables read by a statement, in order of appearance, CTE names excluded."""
    cte_names = {cte.alias_or_name.lower() for cte in tree.find_all(exp.CTE)}
    tables: List[str] = []
    for table in tree.find_all(exp.Table):
        name = table.name
        if name and name.lower() not in cte_names and name not in tables:
            tables.append(name)
    return tables


def validate_read_only(sql: str) -> ValidatedStatement:
    """
    Accept a single SELECT (optionally with WITH, or a set operation of
    SELECTs) and reject everything else.

    Raises:
        DisallowedStatementError: Empty, multiple or non-read-only statements
        SqlExecutionError: The statement does not parse
    """
    if not isinstance(sql, str) or not sql.strip():
        raise DisallowedStatementError("Empty SQL statement")

    try:
        statements = [s for s in sqlglot.parse(sql, read="sqlite") if s is not None]
    except (ParseError, TokenError) as e:
        raise SqlExecutionError(f"Malformed SQL: {e}") from e

    if not statements:
        raise DisallowedStatementError("Empty SQL statement")
    if len(statements) > 1:
        raise DisallowedStatementError(
            f"Only one statement per call is allowed, got {len(statements)}")

    tree = statements[0]
    if not isinstance(tree, READ_ROOTS):
        raise DisallowedStatementError(
            f"Only read-only SELECT statements are allowed, got {tree.key.upper()}")

    forbidden = tree.find(*FORBIDDEN_NODES)
    if forbidden is not None:
        raise DisallowedStatementError(
            f"Statement contains a disallowed {forbidden.key.upper()} clause")

    return ValidatedStatement(sql=sql, tree=tree, tables=referenced_tables(tree))
