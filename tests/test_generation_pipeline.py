"""
Tests for the document generation pipeline.

Run with: pytest tests/test_generation_pipeline.py -v
"""
import sys
from copy import deepcopy
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import docx_paragraphs
from context_builder import build_context
from errors import (
    DownloadFailure,
    InvalidPipelineState,
    InvalidRequest,
    MalformedTemplate,
    RecordNotFound,
    RenderMismatch,
    StorageFailure,
)
from generation_pipeline import (
    GenerationPipeline,
    GenerationRequest,
    PipelineState,
    archive_document,
    build_file_name,
    format_change_note,
    merge_values,
)
from missing_fields import MissingField


LETTER = [
    "Pełnomocnictwo",
    "Client: {{client.name}}, {{client.email}}",
    "Case {{case.case_number}} at {{case.office_name}}",
    "{#assignees}",
    "Handled by {{name}}",
    "{/assignees}",
    "Warsaw, {{date.today}}",
]


@pytest.fixture
def pipeline(memory_store, blob_store, fixed_clock):
    return GenerationPipeline(memory_store, blob_store, clock=fixed_clock)


@pytest.fixture
def letter(make_docx, store_template):
    return store_template(make_docx(LETTER), name="Power of Attorney")


@pytest.fixture
def case_without_email(memory_store):
    record = memory_store.get_case("case-1")
    record["contact"]["email"] = ""
    memory_store.update_case(record)
    return record


class TestHappyPath:
    """All mapped tags populated."""

    def test_generates_without_input(self, pipeline, letter, memory_store):
        """Test that a complete case goes straight to DONE."""
        result = pipeline.start(GenerationRequest(template=letter, case_id="case-1"))

        assert result is not None
        assert pipeline.state == PipelineState.DONE
        assert PipelineState.AWAITING_INPUT not in pipeline.history
        assert PipelineState.PERSISTING not in pipeline.history
        assert result.warnings == []
        assert result.record_updated is False

        assert docx_paragraphs(result.document) == [
            "Pełnomocnictwo",
            "Client: Jan Kowalski, jan.kowalski@example.com",
            "Case WSC-II-S.6151.1.2024 at Mazowiecki Urząd Wojewódzki",
            "Handled by Maria Wiśniewska",
            "Handled by Piotr Nowak",
            "Warsaw, 16.08.2024",
        ]

    def test_usage_count_increments_once(self, pipeline, letter, memory_store):
        pipeline.start(GenerationRequest(template=letter, case_id="case-1"))
        assert memory_store.get_template(letter.id)["usage_count"] == 1

    def test_generation_logged(self, pipeline, letter, memory_store):
        pipeline.start(GenerationRequest(template=letter, case_id="case-1"))
        entries = memory_store.get_audit_entries("case-1")
        assert [e["text"] for e in entries] == ['Generated document: "Power of Attorney"']

    def test_generation_log_opt_out(self, pipeline, letter, memory_store):
        pipeline.start(GenerationRequest(template=letter, case_id="case-1", add_log_entry=False))
        assert memory_store.get_audit_entries("case-1") == []

    def test_file_name(self, pipeline, letter):
        result = pipeline.start(GenerationRequest(template=letter, case_id="case-1"))
        assert result.file_name == "Power_of_Attorney_Jan_Kowalski.docx"

    def test_state_sequence(self, pipeline, letter):
        pipeline.start(GenerationRequest(template=letter, case_id="case-1"))
        assert pipeline.history == [
            PipelineState.IDLE,
            PipelineState.TEMPLATE_FETCHING,
            PipelineState.TAG_EXTRACTION,
            PipelineState.FIELD_CHECK,
            PipelineState.RENDERING,
            PipelineState.DONE,
        ]


class TestMissingData:
    """Suspension and resumption."""

    def test_suspends_with_missing_fields(self, pipeline, letter, case_without_email):
        result = pipeline.start(GenerationRequest(template=letter, case_id="case-1"))

        assert result is None
        assert pipeline.state == PipelineState.AWAITING_INPUT
        assert pipeline.missing_fields == [MissingField(path="client.email", label="Email Address")]
        assert pipeline.context["client"]["email"] == ""

    def test_abandoned_run_changes_nothing(self, pipeline, letter, memory_store, case_without_email):
        pipeline.start(GenerationRequest(template=letter, case_id="case-1"))

        assert memory_store.get_case("case-1") == case_without_email
        assert memory_store.get_template(letter.id)["usage_count"] == 0
        assert memory_store.audit_log == []

    def test_persistence_declined(self, pipeline, letter, memory_store, case_without_email):
        """Test that values are used for rendering but update_case is never called."""
        pipeline.start(GenerationRequest(template=letter, case_id="case-1"))

        with patch.object(memory_store, "update_case", wraps=memory_store.update_case) as update_case:
            result = pipeline.resume({"client.email": "new@example.com"}, persist=False)

        update_case.assert_not_called()
        assert "Client: Jan Kowalski, new@example.com" in docx_paragraphs(result.document)
        assert result.record_updated is False
        assert memory_store.get_case("case-1")["contact"]["email"] == ""
        assert pipeline.state == PipelineState.DONE

    def test_persistence_accepted(self, pipeline, letter, memory_store, case_without_email):
        """Test that the record is updated once and one change note lists the label."""
        pipeline.start(GenerationRequest(template=letter, case_id="case-1", add_log_entry=False))

        with patch.object(memory_store, "update_case", wraps=memory_store.update_case) as update_case:
            result = pipeline.resume({"client.email": "new@example.com"}, persist=True)

        update_case.assert_called_once()
        saved = update_case.call_args[0][0]
        assert saved["contact"]["email"] == "new@example.com"
        assert memory_store.get_case("case-1")["contact"]["email"] == "new@example.com"

        entries = memory_store.get_audit_entries("case-1")
        assert len(entries) == 1
        assert entries[0]["text"] == (
            "Client profile updated during document generation:\n"
            '- "Email Address" was updated.'
        )
        assert result.record_updated is True
        assert result.changed_labels == ["Email Address"]
        assert PipelineState.PERSISTING in pipeline.history

    def test_persistence_with_generation_log(self, pipeline, letter, memory_store, case_without_email):
        pipeline.start(GenerationRequest(template=letter, case_id="case-1"))
        pipeline.resume({"client.email": "new@example.com"}, persist=True)

        texts = [e["text"] for e in memory_store.get_audit_entries("case-1")]
        assert len(texts) == 2
        assert texts[0].startswith("Client profile updated")
        assert texts[1] == 'Generated document: "Power of Attorney"'

    def test_unmapped_value_reaches_context_only(self, pipeline, letter, memory_store, case_without_email):
        pipeline.start(GenerationRequest(template=letter, case_id="case-1"))

        with patch.object(memory_store, "update_case", wraps=memory_store.update_case) as update_case:
            result = pipeline.resume({"client.email": "new@example.com", "client.fax": "22 123"},
                                     persist=True)

        saved = update_case.call_args[0][0]
        assert "fax" not in saved
        assert "fax" not in saved["contact"]
        assert result.changed_labels == ["Email Address"]
        assert pipeline.context["client"]["fax"] == "22 123"

    def test_resume_accepts_missing_field_list(self, pipeline, letter, case_without_email):
        pipeline.start(GenerationRequest(template=letter, case_id="case-1"))
        fields = [MissingField(path=f.path, label=f.label, value="filled@example.com")
                  for f in pipeline.missing_fields]

        result = pipeline.resume(fields, persist=False)
        assert "Client: Jan Kowalski, filled@example.com" in docx_paragraphs(result.document)

    def test_resume_only_once(self, pipeline, letter, case_without_email):
        pipeline.start(GenerationRequest(template=letter, case_id="case-1"))
        pipeline.resume({"client.email": "a@b.c"})

        with pytest.raises(InvalidPipelineState):
            pipeline.resume({"client.email": "a@b.c"})

    def test_resume_before_start(self, pipeline):
        with pytest.raises(InvalidPipelineState):
            pipeline.resume({})

    def test_start_only_once(self, pipeline, letter):
        request = GenerationRequest(template=letter, case_id="case-1")
        pipeline.start(request)
        with pytest.raises(InvalidPipelineState):
            pipeline.start(request)


class TestFatalErrors:
    """Failures that abort the run."""

    def test_missing_case_id(self, pipeline, letter):
        with pytest.raises(InvalidRequest):
            pipeline.start(GenerationRequest(template=letter, case_id=""))
        assert pipeline.state == PipelineState.ERROR

    def test_missing_template(self, pipeline):
        with pytest.raises(InvalidRequest):
            pipeline.start(GenerationRequest(template=None, case_id="case-1"))
        assert pipeline.state == PipelineState.ERROR

    def test_download_failure(self, pipeline, letter, blob_store, memory_store):
        blob_store.delete(letter.storage_location)

        with pytest.raises(DownloadFailure):
            pipeline.start(GenerationRequest(template=letter, case_id="case-1"))

        assert pipeline.state == PipelineState.ERROR
        assert memory_store.get_template(letter.id)["usage_count"] == 0

    def test_unexpected_download_error_wrapped(self, memory_store, letter, fixed_clock):
        blobs = MagicMock()
        blobs.download.side_effect = ConnectionError("network down")
        pipeline = GenerationPipeline(memory_store, blobs, clock=fixed_clock)

        with pytest.raises(DownloadFailure):
            pipeline.start(GenerationRequest(template=letter, case_id="case-1"))

    def test_malformed_template(self, pipeline, store_template):
        template = store_template(b"not a docx", name="Broken")

        with pytest.raises(MalformedTemplate):
            pipeline.start(GenerationRequest(template=template, case_id="case-1"))
        assert pipeline.state == PipelineState.ERROR

    def test_unknown_case(self, pipeline, letter):
        with pytest.raises(RecordNotFound):
            pipeline.start(GenerationRequest(template=letter, case_id="nope"))
        assert pipeline.state == PipelineState.ERROR

    def test_render_mismatch(self, pipeline, make_docx, store_template, memory_store):
        """Test that an unknown tag aborts with its name and no record update."""
        template = store_template(make_docx(["Total: {{invoice.total}}"]), name="Invoice")

        with patch.object(memory_store, "update_case", wraps=memory_store.update_case) as update_case:
            with pytest.raises(RenderMismatch) as exc_info:
                pipeline.start(GenerationRequest(template=template, case_id="case-1"))

        assert exc_info.value.tag == "invoice.total"
        assert pipeline.state == PipelineState.ERROR
        assert pipeline.result is None
        update_case.assert_not_called()
        assert memory_store.get_template(template.id)["usage_count"] == 0

    def test_render_mismatch_after_resume(self, pipeline, make_docx, store_template, memory_store,
                                          case_without_email):
        template = store_template(make_docx(["{{client.email}} {{invoice.total}}"]), name="Invoice")
        pipeline.start(GenerationRequest(template=template, case_id="case-1"))

        with patch.object(memory_store, "update_case", wraps=memory_store.update_case) as update_case:
            with pytest.raises(RenderMismatch):
                pipeline.resume({"client.email": "a@b.c"}, persist=True)

        update_case.assert_not_called()
        assert pipeline.state == PipelineState.ERROR

    def test_renderer_exception_wrapped(self, memory_store, blob_store, letter, fixed_clock):
        renderer = MagicMock()
        renderer.render.side_effect = KeyError("boom")
        pipeline = GenerationPipeline(memory_store, blob_store, renderer=renderer, clock=fixed_clock)

        with pytest.raises(RenderMismatch):
            pipeline.start(GenerationRequest(template=letter, case_id="case-1"))
        assert pipeline.state == PipelineState.ERROR


class TestBestEffortFailures:
    """Bookkeeping failures after the document exists."""

    def test_update_failure_is_warning(self, pipeline, letter, memory_store, case_without_email):
        pipeline.start(GenerationRequest(template=letter, case_id="case-1"))

        with patch.object(memory_store, "update_case", side_effect=RuntimeError("db locked")):
            result = pipeline.resume({"client.email": "new@example.com"}, persist=True)

        assert result.document
        assert result.record_updated is False
        assert [w.kind for w in result.warnings] == ["persist"]
        assert "db locked" in result.warnings[0].message
        assert pipeline.state == PipelineState.DONE

    def test_change_note_failure_is_warning(self, pipeline, letter, memory_store, case_without_email):
        pipeline.start(GenerationRequest(template=letter, case_id="case-1", add_log_entry=False))

        with patch.object(memory_store, "append_audit_entry", side_effect=RuntimeError("log full")):
            result = pipeline.resume({"client.email": "new@example.com"}, persist=True)

        assert result.record_updated is True
        assert [w.kind for w in result.warnings] == ["persist"]

    def test_usage_count_failure_is_warning(self, pipeline, letter, memory_store):
        with patch.object(memory_store, "increment_template_usage", side_effect=RuntimeError("timeout")):
            result = pipeline.start(GenerationRequest(template=letter, case_id="case-1"))

        assert result.document
        assert [w.kind for w in result.warnings] == ["usage_count"]
        assert pipeline.state == PipelineState.DONE
        # The generation audit entry still ran
        assert len(memory_store.get_audit_entries("case-1")) == 1

    def test_audit_failure_is_warning(self, pipeline, letter, memory_store):
        with patch.object(memory_store, "append_audit_entry", side_effect=RuntimeError("log full")):
            result = pipeline.start(GenerationRequest(template=letter, case_id="case-1"))

        assert [w.kind for w in result.warnings] == ["audit_log"]
        assert memory_store.get_template(letter.id)["usage_count"] == 1

    def test_both_tail_failures_collected(self, pipeline, letter, memory_store):
        with patch.object(memory_store, "increment_template_usage", side_effect=RuntimeError("a")), \
             patch.object(memory_store, "append_audit_entry", side_effect=RuntimeError("b")):
            result = pipeline.start(GenerationRequest(template=letter, case_id="case-1"))

        assert [w.kind for w in result.warnings] == ["usage_count", "audit_log"]
        assert not result.ok

    def test_archive_failure_is_warning(self, pipeline, letter, memory_store, blob_store):
        with patch.object(blob_store, "upload", side_effect=StorageFailure("bucket full")):
            result = pipeline.start(GenerationRequest(template=letter, case_id="case-1", archive=True))

        assert [w.kind for w in result.warnings] == ["archive"]
        assert result.archive_url is None
        entries = memory_store.get_audit_entries("case-1")
        assert [e["attachments"] for e in entries] == [[]]


class TestActionLogEntries:
    """Who wrote each entry and which files it links."""

    def test_generation_entry_records_author(self, pipeline, letter, memory_store):
        pipeline.start(GenerationRequest(template=letter, case_id="case-1", generated_by="anna"))

        entries = memory_store.get_audit_entries("case-1")
        assert [e["author"] for e in entries] == ["anna"]
        assert entries[0]["attachments"] == []

    def test_change_note_records_author(self, pipeline, letter, memory_store, case_without_email):
        pipeline.start(GenerationRequest(template=letter, case_id="case-1", generated_by="anna"))
        pipeline.resume({"client.email": "new@example.com"}, persist=True)

        assert [e["author"] for e in memory_store.get_audit_entries("case-1")] == ["anna", "anna"]

    def test_archived_file_linked_to_generation_entry(self, pipeline, letter, memory_store):
        result = pipeline.start(GenerationRequest(template=letter, case_id="case-1", archive=True))

        assert result.archive_url.endswith("-Power_of_Attorney_Jan_Kowalski.docx")
        assert "/case-1/" in result.archive_url
        entries = memory_store.get_audit_entries("case-1")
        assert entries[0]["attachments"] == [result.archive_url]

    def test_archive_without_log_entry(self, pipeline, letter, memory_store, blob_store):
        result = pipeline.start(GenerationRequest(
            template=letter, case_id="case-1", archive=True, add_log_entry=False
        ))

        assert result.archive_url
        assert list((blob_store.root / "case-1").glob("*.docx"))
        assert memory_store.get_audit_entries("case-1") == []


class TestMergeValues:
    """Tests for merge_values()."""

    def test_merge_is_repeatable(self, sample_case, sample_users, sample_office, fixed_clock):
        """Test that merging the same values into fresh contexts gives identical results."""
        values = {"client.email": "new@example.com", "questionnaire.personal_data.pesel": "1"}

        results = []
        for _ in range(2):
            context = build_context(sample_case, sample_users, sample_office, clock=fixed_clock)
            record = deepcopy(sample_case)
            merge_values(context, record, values, persist=True)
            context.pop("date")
            results.append((repr(context), repr(record)))

        assert results[0] == results[1]

    def test_record_untouched_without_persist(self, sample_case):
        record = deepcopy(sample_case)
        context = {"client": {}}

        labels = merge_values(context, record, {"client.email": "x@y.z"}, persist=False)

        assert labels == []
        assert record == sample_case
        assert context == {"client": {"email": "x@y.z"}}

    def test_record_path_used(self, sample_case):
        record = deepcopy(sample_case)
        labels = merge_values({}, record, {"case.case_number": "NEW-1"}, persist=True)

        assert labels == ["Case Number"]
        assert record["immigration_case"]["case_number"] == "NEW-1"

    def test_empty_value_still_merged(self, sample_case):
        record = deepcopy(sample_case)
        merge_values({}, record, {"client.phone": ""}, persist=True)
        assert record["contact"]["phone"] == ""


class TestHelpers:
    """File names, change notes and archiving."""

    def test_build_file_name(self):
        assert build_file_name("Wniosek (pobyt) v2", "Jan  Kowalski-Nowak") == "Wniosek_pobyt_v2_Jan_KowalskiNowak.docx"

    def test_build_file_name_keeps_polish_letters(self):
        assert build_file_name("Pełnomocnictwo", "Łukasz Żak") == "Pełnomocnictwo_Łukasz_Żak.docx"

    def test_build_file_name_without_client(self):
        assert build_file_name("Letter", "") == "Letter.docx"

    def test_format_change_note(self):
        assert format_change_note(["Email Address", "Phone Number"]) == (
            "Client profile updated during document generation:\n"
            '- "Email Address" was updated.\n'
            '- "Phone Number" was updated.'
        )

    def test_archive_document(self, pipeline, letter, blob_store):
        result = pipeline.start(GenerationRequest(template=letter, case_id="case-1"))
        url = archive_document(blob_store, result)

        assert url.startswith("file://")
        assert url.endswith("-Power_of_Attorney_Jan_Kowalski.docx")
        assert "/case-1/" in url
