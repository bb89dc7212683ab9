"""
Generation Context Builder

Assembles the data tree a template is rendered against from a stored case
record and its related entities. Template tags address this tree, not the
record, so the record's internal shape can change without breaking
templates.

Context layout:
    client            identity/contact/detail scalars
    questionnaire     the record's questionnaire, as stored
    case              immigration case block + office_name / office_address
    assignees         user objects for assignee_ids (loop block)
    primary_assignee  first assignee, {} when none
    date              {today: locale date, iso: YYYY-MM-DD}
"""
from copy import deepcopy
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, Optional, Union

from config import DATE_FORMAT

Clock = Callable[[], Union[date, datetime]]


def build_context(
    case: Dict[str, Any],
    users: Iterable[Dict[str, Any]] = (),
    office: Optional[Dict[str, Any]] = None,
    clock: Optional[Clock] = None,
    date_format: str = DATE_FORMAT,
) -> Dict[str, Any]:
    """
    Build a fresh generation context for one case.

    Args:
        case: The case record (client profile) as returned by the record store
        users: Related users; only those listed in case['assignee_ids'] are used
        office: The immigration office referenced by the case, if any
        clock: Zero-argument callable returning "now"; defaults to datetime.now
        date_format: strftime format for date.today

    Returns:
        A new nested dict. The inputs are not modified.
    """
    contact = case.get('contact') or {}
    details = case.get('details') or {}
    immigration_case = case.get('immigration_case') or {}

    users_by_id = {user['id']: user for user in users if user.get('id') is not None}
    assignee_ids = case.get('assignee_ids') or []
    assignees = [deepcopy(users_by_id[uid]) for uid in assignee_ids if uid in users_by_id]

    primary_assignee: Dict[str, Any] = {}
    if assignee_ids and assignee_ids[0] in users_by_id:
        primary_assignee = deepcopy(users_by_id[assignee_ids[0]])

    case_block = deepcopy(immigration_case)
    case_block['office'] = deepcopy(office) if office else {}
    case_block['office_name'] = office.get('name') if office else None
    case_block['office_address'] = office.get('address') if office else None

    return {
        'client': {
            'id': case.get('id'),
            'name': case.get('name'),
            'last_activity_date': case.get('last_activity_date'),
            'case_description': case.get('case_description'),
            'payment_plan': case.get('payment_plan'),
            'phone': contact.get('phone'),
            'email': contact.get('email'),
            'nationality': details.get('nationality'),
            'passport_number': details.get('passport_number'),
        },
        'questionnaire': deepcopy(case.get('questionnaire') or {}),
        'case': case_block,
        'assignees': assignees,
        'primary_assignee': primary_assignee,
        'date': _date_block(clock or datetime.now, date_format),
    }


def _date_block(clock: Clock, date_format: str) -> Dict[str, str]:
    now = clock()
    today = now.date() if isinstance(now, datetime) else now
    return {
        'today': today.strftime(date_format),
        'iso': today.isoformat(),
    }
