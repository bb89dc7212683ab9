"""
Document Generation Pipeline

One pipeline instance generates one document for one case:

    IDLE -> TEMPLATE_FETCHING -> TAG_EXTRACTION -> FIELD_CHECK
         -> [AWAITING_INPUT] -> MERGING -> RENDERING -> [PERSISTING] -> DONE

ERROR is reachable from every step before DONE.

When mapped tags have no value for the case, start() returns None and the
pipeline waits in AWAITING_INPUT with `missing_fields` and `context` exposed.
The caller collects values from the operator and calls resume() once. An
abandoned pipeline has changed nothing outside itself.

After rendering, the usage counter, the optional archive upload and the
"Generated document" log entry run best-effort; their failures come back as
warnings on the result.

Example:
    pipeline = GenerationPipeline(record_store, blob_store)
    result = pipeline.start(GenerationRequest(template=ref, case_id="c-1"))
    if result is None:
        values = {f.path: ask(f.label) for f in pipeline.missing_fields}
        result = pipeline.resume(values, persist=True)
    Path(result.file_name).write_bytes(result.document)
"""
import logging
import re
import uuid
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from blob_store import BlobStore
from config import DATE_FORMAT
from context_builder import Clock, build_context
from errors import (
    AuditLogFailure,
    DocumentGenerationError,
    DownloadFailure,
    InvalidPipelineState,
    InvalidRequest,
    PersistFailure,
    RenderMismatch,
    UsageCountFailure,
)
from missing_fields import MissingField, detect_missing_fields
from path_resolver import set_by_path
from record_store import RecordStore
from tag_extractor import extract_tags_ordered
from tag_map import get_entry
from template_library import TemplateReference
from template_renderer import DOCX_MIME_TYPE, DocxTemplateRenderer, TemplateRenderer

logger = logging.getLogger(__name__)

PROFILE_UPDATE_HEADER = "Client profile updated during document generation:\n"


class PipelineState(Enum):
    IDLE = "idle"
    TEMPLATE_FETCHING = "template_fetching"
    TAG_EXTRACTION = "tag_extraction"
    FIELD_CHECK = "field_check"
    AWAITING_INPUT = "awaiting_input"
    MERGING = "merging"
    RENDERING = "rendering"
    PERSISTING = "persisting"
    DONE = "done"
    ERROR = "error"


@dataclass
class GenerationRequest:
    """What to generate, for which case."""
    template: Optional[TemplateReference]
    case_id: Optional[str]
    add_log_entry: bool = True          # Append "Generated document" to the case log
    generated_by: str = "system"        # Author of the action log entries
    archive: bool = False               # Upload the result next to the case files


@dataclass
class GenerationWarning:
    """A bookkeeping step that failed after the document was produced."""
    kind: str       # persist, usage_count, archive, audit_log
    message: str


@dataclass
class GenerationResult:
    """Rendered document plus what happened around it."""
    document: bytes
    file_name: str
    template: TemplateReference
    case_id: str
    warnings: List[GenerationWarning] = field(default_factory=list)
    record_updated: bool = False
    changed_labels: List[str] = field(default_factory=list)
    archive_url: Optional[str] = None

    @property
    def ok(self) -> bool:
        return not self.warnings


# =============================================================================
# Helpers
# =============================================================================

FieldValues = Union[Mapping, Iterable[MissingField]]


def _as_value_map(values: FieldValues) -> Dict[str, Any]:
    if isinstance(values, Mapping):
        return dict(values)
    return {f.path: f.value for f in values}


def merge_values(
    context: Dict[str, Any],
    record: Dict[str, Any],
    values: FieldValues,
    persist: bool,
) -> List[str]:
    """
    Write operator-supplied values into the context and, when persisting,
    into the case record at each tag's record path.

    Tags are context paths, so every value lands in the context. Only mapped
    tags reach the record.

    Returns:
        Labels of record fields that were staged, in input order
    """
    changed_labels: List[str] = []

    for path, value in _as_value_map(values).items():
        set_by_path(context, path, value)

        if not persist:
            continue
        entry = get_entry(path)
        if entry is None:
            continue
        set_by_path(record, entry.record_path, value)
        changed_labels.append(entry.label)

    return changed_labels


def format_change_note(labels: List[str]) -> str:
    """Audit text listing every field saved back to the record."""
    return PROFILE_UPDATE_HEADER + "\n".join(f'- "{label}" was updated.' for label in labels)


def _file_name_part(text: str) -> str:
    return re.sub(r'\s+', '_', re.sub(r'[^\w\s]', '', text or '').strip())


def build_file_name(template_name: str, client_name: str) -> str:
    """'Pełnomocnictwo (PL)' + 'Jan Kowalski' -> 'Pełnomocnictwo_PL_Jan_Kowalski.docx'"""
    parts = [p for p in (_file_name_part(template_name), _file_name_part(client_name)) if p]
    return f"{'_'.join(parts) or 'document'}.docx"


def archive_document(blob_store: BlobStore, result: GenerationResult) -> str:
    """Upload a generated document next to the case's other files; returns its url."""
    location = f"{result.case_id}/{uuid.uuid4()}-{result.file_name}"
    return blob_store.upload(location, result.document, content_type=DOCX_MIME_TYPE)


# =============================================================================
# Pipeline
# =============================================================================

class GenerationPipeline:
    """
    Single-use generation run.

    Not thread safe; run one instance per (operator, case, template).
    """

    def __init__(
        self,
        record_store: RecordStore,
        blob_store: BlobStore,
        renderer: Optional[TemplateRenderer] = None,
        clock: Optional[Clock] = None,
        date_format: str = DATE_FORMAT,
    ):
        self.record_store = record_store
        self.blob_store = blob_store
        self.renderer = renderer or DocxTemplateRenderer()
        self.clock = clock
        self.date_format = date_format

        self.state = PipelineState.IDLE
        self.history: List[PipelineState] = [PipelineState.IDLE]

        self.request: Optional[GenerationRequest] = None
        self.template_binary: Optional[bytes] = None
        self.record: Optional[Dict[str, Any]] = None
        self.context: Optional[Dict[str, Any]] = None
        self.tags: List[str] = []
        self.missing_fields: List[MissingField] = []
        self.result: Optional[GenerationResult] = None
        self.error: Optional[Exception] = None

    # =========================================================================
    # Entry points
    # =========================================================================

    def start(self, request: GenerationRequest) -> Optional[GenerationResult]:
        """
        Run up to rendering, or suspend for operator input.

        Returns:
            GenerationResult, or None when waiting in AWAITING_INPUT

        Raises:
            InvalidRequest, DownloadFailure, MalformedTemplate, RecordNotFound,
            RenderMismatch (pipeline left in ERROR)
        """
        self._require(PipelineState.IDLE, "start")
        self.request = request

        try:
            if request is None or not request.template or not request.case_id:
                raise InvalidRequest("A template and a case id are required")

            self._transition(PipelineState.TEMPLATE_FETCHING)
            self.template_binary = self._fetch_template(request.template)

            self._transition(PipelineState.TAG_EXTRACTION)
            self.tags = extract_tags_ordered(self.template_binary)

            self.record = self.record_store.get_case(request.case_id)
            self.context = self._build_context(self.record)

            self._transition(PipelineState.FIELD_CHECK)
            self.missing_fields = detect_missing_fields(self.tags, self.context)
        except Exception as e:
            self._fail(e)
            raise

        if self.missing_fields:
            logger.info(
                f"Case {request.case_id}: {len(self.missing_fields)} field(s) missing for "
                f"'{request.template.name}'"
            )
            self._transition(PipelineState.AWAITING_INPUT)
            return None

        return self._finish(staged_record=None, changed_labels=[])

    def resume(self, values: FieldValues, persist: bool = False) -> GenerationResult:
        """
        Merge operator values and finish the run. Accepted exactly once.

        Args:
            values: {tag: value} or the MissingField list with values filled in
            persist: Also save mapped values back to the case record
        """
        self._require(PipelineState.AWAITING_INPUT, "resume")

        try:
            self._transition(PipelineState.MERGING)
            staged_record = deepcopy(self.record)
            changed_labels = merge_values(self.context, staged_record, values, persist)
        except Exception as e:
            self._fail(e)
            raise

        return self._finish(
            staged_record=staged_record if changed_labels else None,
            changed_labels=changed_labels,
        )

    # =========================================================================
    # Steps
    # =========================================================================

    def _fetch_template(self, template: TemplateReference) -> bytes:
        try:
            return self.blob_store.download(template.storage_location)
        except DownloadFailure:
            raise
        except Exception as e:
            raise DownloadFailure(
                f"Could not download template '{template.name}': {e}",
                location=template.storage_location,
            ) from e

    def _build_context(self, record: Dict[str, Any]) -> Dict[str, Any]:
        users = self.record_store.get_related_users(record.get('assignee_ids') or [])

        office = None
        office_id = (record.get('immigration_case') or {}).get('office_id')
        if office_id:
            office = self.record_store.get_office(office_id)

        return build_context(
            record, users=users, office=office, clock=self.clock, date_format=self.date_format
        )

    def _render(self) -> bytes:
        try:
            return self.renderer.render(self.template_binary, self.context)
        except DocumentGenerationError:
            raise
        except Exception as e:
            raise RenderMismatch(explanation=str(e)) from e

    def _finish(
        self,
        staged_record: Optional[Dict[str, Any]],
        changed_labels: List[str],
    ) -> GenerationResult:
        request = self.request

        try:
            self._transition(PipelineState.RENDERING)
            document = self._render()
        except Exception as e:
            self._fail(e)
            raise

        client_name = (self.context.get('client') or {}).get('name') or ''
        result = GenerationResult(
            document=document,
            file_name=build_file_name(request.template.name, client_name),
            template=request.template,
            case_id=request.case_id,
            changed_labels=list(changed_labels),
        )

        if staged_record is not None:
            self._transition(PipelineState.PERSISTING)
            self._persist(staged_record, changed_labels, result)

        for kind, action in self._tail_actions(result):
            try:
                action()
            except Exception as e:
                logger.warning(f"Case {request.case_id}: {kind} failed after generation: {e}")
                result.warnings.append(GenerationWarning(kind=kind, message=str(e)))

        self.result = result
        self._transition(PipelineState.DONE)
        logger.info(f"Case {request.case_id}: generated {result.file_name}")
        return result

    def _persist(
        self,
        staged_record: Dict[str, Any],
        changed_labels: List[str],
        result: GenerationResult,
    ) -> None:
        """Save the amended record and its change note; failures become warnings."""
        case_id = self.request.case_id

        try:
            self.record_store.update_case(staged_record)
            result.record_updated = True
        except Exception as e:
            error = PersistFailure(f"Could not save client profile: {e}")
            logger.error(f"Case {case_id}: {error}", exc_info=True)
            result.warnings.append(GenerationWarning(kind="persist", message=str(error)))
            return

        if not changed_labels:
            return

        try:
            self.record_store.append_audit_entry(
                case_id, format_change_note(changed_labels), author=self.request.generated_by
            )
        except Exception as e:
            error = PersistFailure(f"Client profile saved but the change note was not logged: {e}")
            logger.error(f"Case {case_id}: {error}", exc_info=True)
            result.warnings.append(GenerationWarning(kind="persist", message=str(error)))

    def _tail_actions(self, result: GenerationResult) -> List[Tuple[str, Callable[[], None]]]:
        """Best-effort bookkeeping run after the document exists, in order."""
        request = self.request
        template = request.template

        def increment_usage():
            try:
                self.record_store.increment_template_usage(template.id)
            except Exception as e:
                raise UsageCountFailure(f"Usage count not updated for '{template.name}': {e}") from e

        def archive():
            result.archive_url = archive_document(self.blob_store, result)

        def log_generation():
            attachments = [result.archive_url] if result.archive_url else []
            try:
                self.record_store.append_audit_entry(
                    request.case_id,
                    f'Generated document: "{template.name}"',
                    author=request.generated_by,
                    attachments=attachments,
                )
            except Exception as e:
                raise AuditLogFailure(f"Generation not logged: {e}") from e

        actions = [("usage_count", increment_usage)]
        if request.archive:
            actions.append(("archive", archive))
        if request.add_log_entry:
            actions.append(("audit_log", log_generation))
        return actions

    # =========================================================================
    # State handling
    # =========================================================================

    def _transition(self, state: PipelineState):
        logger.debug(f"Pipeline {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def _require(self, expected: PipelineState, operation: str):
        if self.state != expected:
            raise InvalidPipelineState(
                f"Cannot {operation} while {self.state.value} (expected {expected.value})"
            )

    def _fail(self, error: Exception):
        self.error = error
        case_id = self.request.case_id if self.request else None
        logger.error(f"Case {case_id}: generation failed in {self.state.value}: {error}")
        self._transition(PipelineState.ERROR)
