"""Relationship detection between a parent table and its nested JSON fields."""

import json
from collections import Counter, OrderedDict, defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Set, Tuple

from graphstage.ingest.pagination import connection_elements, is_connection


class RelationshipKind(str, Enum):
    FOREIGN_KEY = "foreign_key"
    JUNCTION_TABLE = "junction_table"


class Cardinality(str, Enum):
    ONE_TO_ONE = "one_to_one"
    ONE_TO_MANY = "one_to_many"
    MANY_TO_MANY = "many_to_many"


# Confidence factor applied when one child shape hangs off several parent tables
SHARED_CHILD_PENALTY = 0.9


def is_array_like(value: Any) -> bool:
    return isinstance(value, list) or is_connection(value)


def nested_elements(value: Any) -> List[Dict[str, Any]]:
    """
    Child objects held by an array-like field value.

    Nulls are dropped and non-object elements are wrapped as
    `{"value": element}` so mixed arrays still map onto one table.
    """
    if is_connection(value):
        value = connection_elements(value)
    if not isinstance(value, list):
        return []
    elements = []
    for element in value:
        if element is None:
            continue
        if isinstance(element, dict):
            elements.append(element)
        else:
            elements.append({"value": element})
    return elements


def content_fingerprint(obj: Any) -> str:
    """Canonical text of an object, used to spot recurring child rows."""
    return json.dumps(obj, sort_keys=True, default=str)


@dataclass
class RelationshipDecision:
    """How one nested field is represented relationally."""
    kind: RelationshipKind
    cardinality: Cardinality
    confidence: float
    reason: str
    presence: float = 1.0
    uniformity: float = 1.0
    ambiguity: float = 0.0

    @property
    def is_junction(self) -> bool:
        return self.kind == RelationshipKind.JUNCTION_TABLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "cardinality": self.cardinality.value,
            "confidence": self.confidence,
            "reason": self.reason,
            "metadata": {
                "presence": self.presence,
                "uniformity": self.uniformity,
                "ambiguity": self.ambiguity,
            },
        }


@dataclass
class FieldLink:
    """
    Every occurrence of one nested field of a parent table.

    `child_values` holds one entry per parent row: the raw field value, or
    None where the row lacked the field.
    """
    parent_table: str
    field_name: str
    child_table: str
    child_values: List[Any] = field(default_factory=list)

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.parent_table, self.field_name, self.child_table)

    @property
    def is_array(self) -> bool:
        return any(is_array_like(value) for value in self.child_values)


@dataclass
class DetectionResult:
    decisions: Dict[Tuple[str, str, str], RelationshipDecision]
    junction_children: Set[str]

    def decision_for(self, parent_table: str, field_name: str, child_table: str) -> RelationshipDecision:
        return self.decisions[(parent_table, field_name, child_table)]


class RelationshipDetector:
    """
    Classifies nested fields as foreign keys, one-to-many children, or
    many-to-many junctions, with a confidence score for each call.
    """

    def classify(
        self,
        parent_table: str,
        field_name: str,
        child_values: List[Any],
        shared_by: int = 1,
        force_junction: bool = False,
    ) -> RelationshipDecision:
        """
        Classify one nested field.

        Args:
            parent_table: Table holding the field
            field_name: JSON key of the field
            child_values: Field value per parent row (None where absent)
            shared_by: Number of distinct parent tables reaching the child shape
            force_junction: Child rows are shared elsewhere, link through a junction

        Returns:
            RelationshipDecision
        """
        if not any(is_array_like(value) for value in child_values):
            return RelationshipDecision(
                kind=RelationshipKind.FOREIGN_KEY,
                cardinality=Cardinality.ONE_TO_ONE,
                confidence=1.0,
                reason=f"{parent_table}.{field_name} is a nested object",
            )

        parent_rows = len(child_values)
        populated_rows = 0
        key_sets: Counter = Counter()
        owners: Dict[str, Set[int]] = defaultdict(set)
        total_elements = 0

        for row_index, value in enumerate(child_values):
            elements = nested_elements(value)
            if elements:
                populated_rows += 1
            for element in elements:
                total_elements += 1
                key_sets[frozenset(element)] += 1
                owners[content_fingerprint(element)].add(row_index)

        presence = populated_rows / parent_rows if parent_rows else 0.0
        uniformity = (
            key_sets.most_common(1)[0][1] / total_elements if total_elements else 1.0
        )
        base = presence * uniformity
        recurring = any(len(rows) > 1 for rows in owners.values())

        if shared_by > 1 or recurring or force_junction:
            duplicates = total_elements - len(owners)
            ambiguity = duplicates / total_elements if total_elements else 0.0
            confidence = base * (1 - ambiguity / 2)
            if shared_by > 1:
                confidence *= SHARED_CHILD_PENALTY
                reason = f"child shape of {parent_table}.{field_name} is shared by {shared_by} parent tables"
            elif recurring:
                reason = f"elements of {parent_table}.{field_name} recur under different parent rows"
            else:
                reason = f"child rows of {parent_table}.{field_name} are shared through another junction"
            return RelationshipDecision(
                kind=RelationshipKind.JUNCTION_TABLE,
                cardinality=Cardinality.MANY_TO_MANY,
                confidence=round(confidence, 4),
                reason=reason,
                presence=round(presence, 4),
                uniformity=round(uniformity, 4),
                ambiguity=round(ambiguity, 4),
            )

        return RelationshipDecision(
            kind=RelationshipKind.FOREIGN_KEY,
            cardinality=Cardinality.ONE_TO_MANY,
            confidence=round(base, 4),
            reason=f"{parent_table}.{field_name} is an array owned by a single parent row",
            presence=round(presence, 4),
            uniformity=round(uniformity, 4),
        )

    def detect(self, links: List[FieldLink]) -> DetectionResult:
        """
        Classify every nested field of a staging batch.

        Links landing in the same child table are judged together: once one
        array link needs a junction, the child's rows are de-duplicated and
        every array link into it goes through a junction.
        """
        merged: "OrderedDict[Tuple[str, str, str], FieldLink]" = OrderedDict()
        for link in links:
            existing = merged.get(link.key)
            if existing is None:
                merged[link.key] = FieldLink(
                    link.parent_table, link.field_name, link.child_table,
                    list(link.child_values))
            else:
                existing.child_values.extend(link.child_values)

        parents_by_child: Dict[str, Set[str]] = defaultdict(set)
        for link in merged.values():
            if link.is_array:
                parents_by_child[link.child_table].add(link.parent_table)

        decisions: Dict[Tuple[str, str, str], RelationshipDecision] = {}
        for key, link in merged.items():
            decisions[key] = self.classify(
                link.parent_table,
                link.field_name,
                link.child_values,
                shared_by=len(parents_by_child.get(link.child_table, ())) or 1,
            )

        junction_children = {
            link.child_table for key, link in merged.items() if decisions[key].is_junction
        }
        for key, link in merged.items():
            if link.is_array and link.child_table in junction_children and not decisions[key].is_junction:
                decisions[key] = self.classify(
                    link.parent_table,
                    link.field_name,
                    link.child_values,
                    force_junction=True,
                )

        return DetectionResult(decisions=decisions, junction_children=junction_children)
