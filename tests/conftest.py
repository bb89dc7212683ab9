"""
Shared pytest fixtures for Case Document Generator tests.

Provides:
- Sample case record, users and immigration office
- Fixed clock for the date block
- .docx builders (python-docx, and raw parts for split-run layouts)
- In-memory record store and a local blob store on tmp_path
- Template factory that stores a template and returns its reference
"""
import io
import os
import sys
import tempfile
import zipfile
from copy import deepcopy
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Keep config's data directories out of the working tree
os.environ.setdefault("CASEGEN_DATA_DIR", tempfile.mkdtemp(prefix="casegen-test-"))

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from docx import Document

from blob_store import LocalBlobStore
from record_store import MemoryRecordStore
from template_library import TemplateCategory, TemplateReference


SAMPLE_CASE = {
    "id": "case-1",
    "name": "Jan Kowalski",
    "last_activity_date": "2024-08-01",
    "case_description": "Temporary residence permit (work)",
    "payment_plan": "3 installments",
    "contact": {
        "phone": "+48 600 100 200",
        "email": "jan.kowalski@example.com",
    },
    "details": {
        "nationality": "Ukrainian",
        "passport_number": "FX1234567",
    },
    "immigration_case": {
        "office_id": "office-1",
        "case_number": "WSC-II-S.6151.1.2024",
        "case_password": "k7Qx2",
    },
    "questionnaire": {
        "personal_data": {
            "surname": "Kowalski",
            "name": "Jan",
            "family_name": "Kowalski",
            "date_of_birth": "1990-05-14",
            "place_of_birth": "Lviv",
            "country_of_birth": "Ukraine",
            "pesel": "90051412345",
            "height": 180,
        },
        "place_of_residence_in_poland": "ul. Długa 1, 00-001 Warszawa",
        "last_entry_date_to_poland": "2023-11-02",
        "has_family_in_poland": True,
        "family_members_in_poland": [
            {"full_name": "Anna Kowalska", "degree_of_kinship": "wife"},
            {"full_name": "Olga Kowalska", "degree_of_kinship": "daughter"},
        ],
        "travels_and_stays_outside_poland": [],
    },
    "assignee_ids": ["user-2", "user-1"],
}

SAMPLE_USERS = [
    {"id": "user-1", "name": "Piotr Nowak", "email": "piotr@office.example", "phone": "+48 22 111 11 11",
     "description": "Senior case manager"},
    {"id": "user-2", "name": "Maria Wiśniewska", "email": "maria@office.example", "phone": "+48 22 222 22 22",
     "description": "Immigration specialist"},
]

SAMPLE_OFFICE = {
    "id": "office-1",
    "name": "Mazowiecki Urząd Wojewódzki",
    "address": "ul. Marszałkowska 3/5, 00-624 Warszawa",
}

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
WML_CONTENT_TYPE = 'application/vnd.openxmlformats-officedocument.wordprocessingml.'
RELATIONSHIP_TYPE = 'http://schemas.openxmlformats.org/officeDocument/2006/relationships/'

PACKAGE_RELS_XML = (
    XML_DECLARATION
    + '<Relationships xmlns="http://schemas.openxmlformats.org/package/2006/relationships">'
    f'<Relationship Id="rId1" Type="{RELATIONSHIP_TYPE}officeDocument" Target="word/document.xml"/>'
    '</Relationships>'
)

W_NAMESPACES = (
    'xmlns:w="http://schemas.openxmlformats.org/wordprocessingml/2006/main" '
    'xmlns:r="http://schemas.openxmlformats.org/officeDocument/2006/relationships"'
)

# Extra part kind -> content type
PART_CONTENT_TYPES = {
    'header': WML_CONTENT_TYPE + 'header+xml',
    'footer': WML_CONTENT_TYPE + 'footer+xml',
    'footnotes': WML_CONTENT_TYPE + 'footnotes+xml',
    'endnotes': WML_CONTENT_TYPE + 'endnotes+xml',
    'image': 'image/png',
}


def paragraph_xml(runs: List[str]) -> str:
    """One <w:p> with one <w:r> per run text."""
    body = ''.join(
        f'<w:r><w:rPr><w:b/></w:rPr><w:t xml:space="preserve">{text}</w:t></w:r>' for text in runs
    )
    return f'<w:p>{body}</w:p>'


def part_xml(paragraphs: List[List[str]], root: str = 'w:document', sect_pr: str = '') -> str:
    body = ''.join(paragraph_xml(runs) for runs in paragraphs)
    if root == 'w:document':
        body = f'<w:body>{body}<w:sectPr>{sect_pr}</w:sectPr></w:body>'
    return f'{XML_DECLARATION}<{root} {W_NAMESPACES}>{body}</{root}>'


def _part_kind(name: str) -> str:
    stem = name.rsplit('/', 1)[-1]
    for kind in ('header', 'footer', 'footnotes', 'endnotes'):
        if stem.startswith(kind):
            return kind
    return 'image'


def build_raw_docx(paragraphs: List[List[str]], extra_parts: Optional[Dict[str, str]] = None) -> bytes:
    """
    Minimal .docx package whose runs are split exactly as given.

    extra_parts maps part names (word/header1.xml, word/footnotes.xml,
    word/media/logo.png, ...) to their content; each is related to the
    document, and headers and footers are referenced from the section.
    """
    overrides = [('/word/document.xml', WML_CONTENT_TYPE + 'document.main+xml')]
    relationships = []
    references = []

    for index, name in enumerate(extra_parts or {}, start=2):
        kind = _part_kind(name)
        rel_id = f"rId{index}"
        overrides.append((f"/{name}", PART_CONTENT_TYPES[kind]))
        relationships.append(
            f'<Relationship Id="{rel_id}" Type="{RELATIONSHIP_TYPE}{kind}" Target="{name[len("word/"):]}"/>'
        )
        if kind in ('header', 'footer'):
            references.append(f'<w:{kind}Reference w:type="default" r:id="{rel_id}"/>')

    content_types = (
        XML_DECLARATION
        + '<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">'
        '<Default Extension="rels" ContentType="application/vnd.openxmlformats-package.relationships+xml"/>'
        '<Default Extension="xml" ContentType="application/xml"/>'
        + ''.join(f'<Override PartName="{part}" ContentType="{ct}"/>' for part, ct in overrides)
        + '</Types>'
    )
    document_rels = (
        XML_DECLARATION
        + '<Relationships xmlns="http://schemas.openxmlformats.org/package/2006/relationships">'
        + ''.join(relationships)
        + '</Relationships>'
    )

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w', zipfile.ZIP_DEFLATED) as zf:
        zf.writestr('[Content_Types].xml', content_types)
        zf.writestr('_rels/.rels', PACKAGE_RELS_XML)
        zf.writestr('word/document.xml', part_xml(paragraphs, sect_pr=''.join(references)))
        zf.writestr('word/_rels/document.xml.rels', document_rels)
        for name, content in (extra_parts or {}).items():
            zf.writestr(name, content)
    return buffer.getvalue()


def build_docx(paragraphs: List[str]) -> bytes:
    """A real .docx written by python-docx, one paragraph per string."""
    doc = Document()
    for text in paragraphs:
        doc.add_paragraph(text)
    buffer = io.BytesIO()
    doc.save(buffer)
    return buffer.getvalue()


def docx_paragraphs(document_binary: bytes) -> List[str]:
    """Paragraph texts of a .docx, read back with python-docx."""
    doc = Document(io.BytesIO(document_binary))
    return [p.text for p in doc.paragraphs]


@pytest.fixture
def sample_case():
    """Fixture providing a fully populated case record."""
    return deepcopy(SAMPLE_CASE)


@pytest.fixture
def sample_users():
    return deepcopy(SAMPLE_USERS)


@pytest.fixture
def sample_office():
    return deepcopy(SAMPLE_OFFICE)


@pytest.fixture
def fixed_clock():
    """Clock pinned to 16 August 2024."""
    return lambda: datetime(2024, 8, 16, 10, 30)


@pytest.fixture
def make_docx():
    return build_docx


@pytest.fixture
def make_raw_docx():
    return build_raw_docx


@pytest.fixture
def memory_store(sample_case, sample_users, sample_office):
    """In-memory record store seeded with the sample case."""
    return MemoryRecordStore(
        cases=[sample_case],
        users=sample_users,
        offices=[sample_office],
    )


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def store_template(memory_store, blob_store):
    """
    Store a template binary and register it.

    Usage:
        template = store_template(make_docx(["{{client.name}}"]), name="Letter")
    """
    counter = {"n": 0}

    def _store(data: bytes, name: str = "Power of Attorney",
               category: TemplateCategory = TemplateCategory.CUSTOM) -> TemplateReference:
        counter["n"] += 1
        template_id = f"tpl-{counter['n']}"
        location = f"templates/{template_id}.docx"
        blob_store.upload(location, data)
        reference = TemplateReference(
            id=template_id,
            name=name,
            storage_location=location,
            description="",
            category=category,
            usage_count=0,
        )
        memory_store.save_template(reference.to_row())
        return reference

    return _store
