"""
Template Tag Map

Single table tying each checkable template tag to:
- its location in the generation context (used to detect missing values
  and as the merge-back target), and
- its location in the stored case record (used only when the operator
  chooses to save corrected values back to the client profile).

Adding a tag means adding one TagMapEntry below; nothing else changes.

Numeric and yes/no questionnaire fields (has_family_in_poland, height, ...)
are intentionally not mapped: an unset check would treat 0/False as missing.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class TagMapEntry:
    """One checkable template tag."""
    tag: str
    context_path: str
    record_path: str
    label: str


TAG_MAP: Tuple[TagMapEntry, ...] = (
    # Client details
    TagMapEntry('client.name', 'client.name', 'name', 'Full Name'),
    TagMapEntry('client.email', 'client.email', 'contact.email', 'Email Address'),
    TagMapEntry('client.phone', 'client.phone', 'contact.phone', 'Phone Number'),
    TagMapEntry('client.nationality', 'client.nationality', 'details.nationality', 'Nationality'),
    TagMapEntry('client.passport_number', 'client.passport_number', 'details.passport_number', 'Passport Number'),
    TagMapEntry('client.case_description', 'client.case_description', 'case_description', 'Case Summary'),

    # Case details
    TagMapEntry('case.case_number', 'case.case_number', 'immigration_case.case_number', 'Case Number'),
    TagMapEntry('case.case_password', 'case.case_password', 'immigration_case.case_password', 'Password to Case'),

    # Questionnaire - personal data
    TagMapEntry('questionnaire.personal_data.surname', 'questionnaire.personal_data.surname',
                'questionnaire.personal_data.surname', 'Surname (Questionnaire)'),
    TagMapEntry('questionnaire.personal_data.name', 'questionnaire.personal_data.name',
                'questionnaire.personal_data.name', 'First Name(s) (Questionnaire)'),
    TagMapEntry('questionnaire.personal_data.family_name', 'questionnaire.personal_data.family_name',
                'questionnaire.personal_data.family_name', 'Family Name (Questionnaire)'),
    TagMapEntry('questionnaire.personal_data.date_of_birth', 'questionnaire.personal_data.date_of_birth',
                'questionnaire.personal_data.date_of_birth', 'Date of Birth (Questionnaire)'),
    TagMapEntry('questionnaire.personal_data.place_of_birth', 'questionnaire.personal_data.place_of_birth',
                'questionnaire.personal_data.place_of_birth', 'Place of Birth (Questionnaire)'),
    TagMapEntry('questionnaire.personal_data.country_of_birth', 'questionnaire.personal_data.country_of_birth',
                'questionnaire.personal_data.country_of_birth', 'Country of Birth (Questionnaire)'),
    TagMapEntry('questionnaire.personal_data.pesel', 'questionnaire.personal_data.pesel',
                'questionnaire.personal_data.pesel', 'PESEL Number (Questionnaire)'),

    # Questionnaire - main
    TagMapEntry('questionnaire.place_of_residence_in_poland', 'questionnaire.place_of_residence_in_poland',
                'questionnaire.place_of_residence_in_poland', 'Place of Residence in Poland'),
    TagMapEntry('questionnaire.last_entry_date_to_poland', 'questionnaire.last_entry_date_to_poland',
                'questionnaire.last_entry_date_to_poland', 'Date of Last Entry to Poland'),
)


def _build_index(entries: Tuple[TagMapEntry, ...]) -> Dict[str, TagMapEntry]:
    index: Dict[str, TagMapEntry] = {}
    for entry in entries:
        if entry.tag in index:
            raise ValueError(f"Duplicate tag in tag map: {entry.tag}")
        index[entry.tag] = entry
    return index


_INDEX = _build_index(TAG_MAP)


def get_entry(tag: str) -> Optional[TagMapEntry]:
    """Look up a tag; None if the tag is not checkable."""
    return _INDEX.get(tag)


def is_mapped(tag: str) -> bool:
    return tag in _INDEX


def mapped_tags() -> List[str]:
    return [entry.tag for entry in TAG_MAP]


# =============================================================================
# Tag Reference (what template authors may use)
# =============================================================================

TAG_REFERENCE: Dict[str, List[Tuple[str, str]]] = {
    'General': [
        ('date.today', 'Current date (e.g., 16.08.2024)'),
        ('date.iso', 'Current date in ISO format (e.g., 2024-08-16)'),
    ],
    'Client': [
        ('client.name', "Client's full name"),
        ('client.email', "Client's email address"),
        ('client.phone', "Client's phone number"),
        ('client.nationality', "Client's nationality"),
        ('client.passport_number', "Client's passport number"),
        ('client.case_description', 'The case summary from the client profile'),
    ],
    'Case': [
        ('case.case_number', 'The immigration case number'),
        ('case.case_password', 'Password for the online case portal'),
        ('case.office_name', 'Name of the Immigration Office'),
        ('case.office_address', 'Address of the Immigration Office'),
    ],
    'Primary Assignee': [
        ('primary_assignee.name', 'Full name of the primary case manager'),
        ('primary_assignee.email', 'Email of the primary case manager'),
        ('primary_assignee.phone', 'Phone number of the primary case manager'),
        ('primary_assignee.description', 'Profile description of the primary case manager'),
    ],
    'Questionnaire: Personal Data': [
        ('questionnaire.personal_data.surname', 'Surname'),
        ('questionnaire.personal_data.name', 'First name(s)'),
        ('questionnaire.personal_data.family_name', 'Family name'),
        ('questionnaire.personal_data.previously_used_surnames', 'Previously used surnames'),
        ('questionnaire.personal_data.previously_used_names', 'Previously used names'),
        ('questionnaire.personal_data.fathers_name', "Father's name"),
        ('questionnaire.personal_data.mothers_name', "Mother's name"),
        ('questionnaire.personal_data.mothers_maiden_name', "Mother's maiden name"),
        ('questionnaire.personal_data.date_of_birth', 'Date of birth (YYYY-MM-DD)'),
        ('questionnaire.personal_data.place_of_birth', 'Place of birth'),
        ('questionnaire.personal_data.country_of_birth', 'Country of birth'),
        ('questionnaire.personal_data.citizenship', 'Citizenship'),
        ('questionnaire.personal_data.marital_status', 'Marital Status (Single, Married, etc.)'),
        ('questionnaire.personal_data.education', 'Education level (Primary, Secondary, etc.)'),
        ('questionnaire.personal_data.height', 'Height in cm'),
        ('questionnaire.personal_data.eye_color', 'Eye color'),
        ('questionnaire.personal_data.special_marks', 'Special marks'),
        ('questionnaire.personal_data.pesel', 'PESEL number'),
    ],
    'Questionnaire: Main Info': [
        ('questionnaire.place_of_residence_in_poland', 'Full address in Poland'),
        ('questionnaire.last_entry_date_to_poland', 'Date of last entry to Poland (YYYY-MM-DD)'),
        ('questionnaire.has_family_in_poland', 'True/False if family is in Poland'),
        ('questionnaire.was_sentenced_in_poland', 'True/False if sentenced by a court'),
        ('questionnaire.is_subject_of_criminal_proceedings', 'True/False if subject to criminal proceedings'),
        ('questionnaire.has_liabilities', 'True/False if has financial liabilities'),
    ],
}

# Loop blocks: block name -> tags available inside the block
LOOP_REFERENCE: Dict[str, List[str]] = {
    'assignees': ['name', 'email', 'phone', 'description'],
    'questionnaire.family_members_in_poland': [
        'full_name', 'sex', 'date_of_birth', 'degree_of_kinship',
        'citizenship', 'place_of_residence', 'is_applying', 'is_dependent',
    ],
    'questionnaire.travels_and_stays_outside_poland': ['from_date', 'to_date', 'country'],
}
