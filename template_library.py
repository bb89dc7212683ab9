"""
Template Library

Catalogue of .docx templates: the reference rows live in the record store,
the binaries in the blob store.

Templates come in two categories:
- standard: shipped with the office setup, cannot be deleted here
- custom: uploaded by staff, deletable
"""
import logging
import re
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from blob_store import BlobStore
from errors import InvalidRequest, StorageFailure
from record_store import RecordStore
from tag_extractor import extract_tags
from template_renderer import DOCX_MIME_TYPE

logger = logging.getLogger(__name__)


class TemplateCategory(Enum):
    STANDARD = "standard"
    CUSTOM = "custom"


@dataclass
class TemplateReference:
    """A template known to the library."""
    id: str
    name: str
    storage_location: str
    description: str = ""
    category: TemplateCategory = TemplateCategory.CUSTOM
    usage_count: int = 0
    uploaded_by: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TemplateReference":
        return cls(
            id=row['id'],
            name=row['name'],
            storage_location=row['storage_location'],
            description=row.get('description') or "",
            category=TemplateCategory(row.get('category') or 'custom'),
            usage_count=row.get('usage_count') or 0,
            uploaded_by=row.get('uploaded_by'),
            created_at=row.get('created_at'),
        )

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        row['category'] = self.category.value
        return row


def safe_file_stem(name: str) -> str:
    """Template name reduced to word characters, spaces become underscores."""
    stem = re.sub(r'[^\w\s-]', '', name).strip()
    return re.sub(r'\s+', '_', stem) or 'template'


class TemplateLibrary:
    """
    List, upload and delete templates.

    Usage:
        library = TemplateLibrary(record_store, blob_store)
        for template in library.list_templates(search="umowa"):
            print(template.name, template.usage_count)
    """

    def __init__(self, record_store: RecordStore, blob_store: BlobStore):
        self.record_store = record_store
        self.blob_store = blob_store

    def get_template(self, template_id: str) -> TemplateReference:
        return TemplateReference.from_row(self.record_store.get_template(template_id))

    def list_templates(self, search: str = None) -> List[TemplateReference]:
        """
        Templates sorted by usage (most used first), then name.

        Args:
            search: Case-insensitive text matched against name and description
        """
        templates = [TemplateReference.from_row(row) for row in self.record_store.list_templates()]

        if search:
            needle = search.lower()
            templates = [
                t for t in templates
                if needle in t.name.lower() or needle in (t.description or "").lower()
            ]

        return sorted(templates, key=lambda t: (-t.usage_count, t.name.lower()))

    def grouped(self, search: str = None) -> Dict[str, List[TemplateReference]]:
        """{'standard': [...], 'custom': [...]} in list_templates() order."""
        groups: Dict[str, List[TemplateReference]] = {c.value: [] for c in TemplateCategory}
        for template in self.list_templates(search):
            groups[template.category.value].append(template)
        return groups

    def upload_template(
        self,
        name: str,
        data: bytes,
        description: str = "",
        uploaded_by: str = None,
        category: TemplateCategory = TemplateCategory.CUSTOM,
    ) -> TemplateReference:
        """
        Validate a .docx template, store its binary and register it.

        Raises:
            InvalidRequest: empty name
            MalformedTemplate: data is not a readable .docx
        """
        name = (name or "").strip()
        if not name:
            raise InvalidRequest("Template name is required")

        tags = extract_tags(data)
        logger.info(f"Template '{name}' uses {len(tags)} tags")

        template_id = str(uuid.uuid4())
        location = f"templates/{template_id}-{safe_file_stem(name)}.docx"
        self.blob_store.upload(location, data, content_type=DOCX_MIME_TYPE)

        reference = TemplateReference(
            id=template_id,
            name=name,
            storage_location=location,
            description=description or "",
            category=category,
            usage_count=0,
            uploaded_by=uploaded_by,
            created_at=datetime.now().isoformat(),
        )
        try:
            self.record_store.save_template(reference.to_row())
        except Exception:
            # Do not leave an orphaned binary behind
            self.blob_store.delete(location)
            raise

        return reference

    def delete_template(self, template_id: str) -> TemplateReference:
        """Delete a custom template's row and binary."""
        reference = self.get_template(template_id)
        if reference.category != TemplateCategory.CUSTOM:
            raise InvalidRequest(f"Standard template '{reference.name}' cannot be deleted")

        self.record_store.delete_template(template_id)
        try:
            self.blob_store.delete(reference.storage_location)
        except StorageFailure as e:
            logger.warning(f"Template row removed but binary delete failed: {e}")

        return reference
