"""
Missing Field Detection

Cross-references a template's tags with the tag map and a built context and
reports the mapped tags whose context value is empty. The result drives the
single confirmation step where the operator fills in the gaps.

"Empty" is Python truthiness: None, "", 0, False and empty containers all
count as missing. A legitimately zero value is flagged too; numeric and
yes/no fields are kept out of the tag map for that reason.
"""
from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, List

from path_resolver import get_by_path
from tag_map import get_entry


@dataclass
class MissingField:
    """A mapped tag with no value in the context."""
    path: str
    label: str
    value: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


def detect_missing_fields(tags: Iterable[str], context: Dict[str, Any]) -> List[MissingField]:
    """
    Return one MissingField per mapped tag with an empty context value.

    Args:
        tags: Tag names extracted from the template (order is kept)
        context: Generation context from build_context()

    Returns:
        MissingField list in the order the tags were supplied
    """
    missing: List[MissingField] = []
    seen = set()

    for tag in tags:
        if tag in seen:
            continue
        seen.add(tag)

        entry = get_entry(tag)
        if entry is None:
            continue  # Loop bodies and unmapped context keys are not checkable

        if not get_by_path(context, entry.context_path):
            missing.append(MissingField(path=tag, label=entry.label, value=""))

    return missing
