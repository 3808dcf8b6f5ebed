"""
Negotiation Version Lifecycle
=============================
State machine of the negotiation rounds of a lot, and the version-content
mutations whose legality depends on it.

States of a version:
1. editable      - frozen=False, validated=False
2. frozen        - notes / prices locked, decisions still writable
3. validated     - everything locked; reversible by unvalidate_version

Effective read-only = frozen OR validated. Every mutation re-checks the
state and fails closed with a ``TransitionRejected`` reason code.
The negotiation questionnaire is filled after a round is closed and is
not affected by the freeze.
"""

from datetime import date, datetime
import logging
from typing import Iterable, List, Optional

from . import config
from .document import ProjectDocument
from .errors import InvalidInput, NotFound, TransitionRejected
from .models import (
    CompanyQuestionnaire,
    CriterionRole,
    Lot,
    NegotiationDecision,
    NegotiationQuestion,
    NegotiationQuestionnaire,
    NegotiationVersion,
    NotationLevel,
    PriceEntry,
    TechnicalNote,
    utcnow,
)

logger = logging.getLogger(__name__)

# Marks a keyword argument the caller did not pass (None is a valid value)
_UNSET = object()

# Decisions that carry a company forward into the next round
CARRY_FORWARD_DECISIONS = frozenset({NegotiationDecision.RETAINED, NegotiationDecision.AWARDEE})

VERSION_DISPLAY_LABELS = {
    "V0": "Analyse initiale",
    "V1": "Analyse suite à négociation 1",
    "V2": "Analyse suite à négociation 2",
}


# ============== Helpers ==============

def get_version(lot: Lot, version_id: str) -> NegotiationVersion:
    version = lot.find_version(version_id)
    if version is None:
        raise NotFound(f"Version {version_id} not found in lot {lot.label}")
    return version


def is_read_only(version: NegotiationVersion) -> bool:
    return version.read_only


def _require_editable(version: NegotiationVersion) -> None:
    if version.read_only:
        state = "validated" if version.validated else "frozen"
        raise TransitionRejected(f"Version {version.label} is {state}", code="VERSION_READ_ONLY")


def _require_not_validated(version: NegotiationVersion) -> None:
    if version.validated:
        raise TransitionRejected(f"Version {version.label} is validated", code="VERSION_VALIDATED")


def _require_roster_company(lot: Lot, version: NegotiationVersion, company_id: int) -> None:
    if lot.get_company(company_id) is None:
        raise NotFound(f"Company {company_id} not found in lot {lot.label}")
    if not lot.in_roster(version, company_id):
        raise InvalidInput(
            f"Company {company_id} does not take part in version {version.label}",
            code="COMPANY_NOT_IN_VERSION",
        )


# ============== Transitions ==============

def create_version(
    lot: Lot,
    label: Optional[str] = None,
    analysis_date: Optional[date] = None,
    now: Optional[datetime] = None,
) -> NegotiationVersion:
    """
    Open a new negotiation round.

    Requires fewer than 3 versions, a validated current version and no
    awardee in it. The current version is frozen; the new one starts with
    the companies retained in it, and no notes, prices or decisions.
    """
    current = lot.current_version
    if len(lot.versions) >= config.MAX_VERSIONS:
        raise TransitionRejected(
            f"A lot holds at most {config.MAX_VERSIONS} versions", code="MAX_VERSIONS_REACHED"
        )
    if not current.validated:
        raise TransitionRejected(
            f"Version {current.label} must be validated first", code="VERSION_NOT_VALIDATED"
        )
    if current.has_decision(NegotiationDecision.AWARDEE):
        raise TransitionRejected(
            f"Version {current.label} already designates an awardee", code="AWARDEE_EXISTS"
        )

    roster = [
        c.id for c in lot.roster(current)
        if current.decision_for(c.id) in CARRY_FORWARD_DECISIONS
    ]
    if not roster:
        raise TransitionRejected(
            f"No company is retained for negotiation in {current.label}", code="NO_RETAINED_COMPANY"
        )

    current.frozen = True
    version = NegotiationVersion(
        label=label or f"V{len(lot.versions)}",
        created_at=now or utcnow(),
        analysis_date=analysis_date or date.today(),
        company_ids=roster,
    )
    lot.versions.append(version)
    lot.current_version_id = version.id
    logger.info(f"Created version {version.label} on lot {lot.label} with companies {roster}")
    return version


def validate_version(lot: Lot, version_id: str, now: Optional[datetime] = None) -> NegotiationVersion:
    """
    Close a round: the weighting must sum to 100 and the decision map must
    hold an outcome, i.e. an awardee, or a retained company while another
    round can still be opened.
    """
    version = get_version(lot, version_id)
    if version.validated:
        return version

    ProjectDocument.check_weighting(lot)

    if not version.has_decision(NegotiationDecision.AWARDEE):
        can_negotiate = len(lot.versions) < config.MAX_VERSIONS
        if not (can_negotiate and version.has_decision(NegotiationDecision.RETAINED)):
            raise TransitionRejected(
                f"Version {version.label} has no awardee", code="NO_AWARDEE"
            )

    version.validated = True
    version.validated_at = now or utcnow()
    logger.info(f"Validated version {version.label} on lot {lot.label}")
    return version


def unvalidate_version(lot: Lot, version_id: str) -> NegotiationVersion:
    version = get_version(lot, version_id)
    version.validated = False
    version.validated_at = None
    logger.info(f"Unvalidated version {version.label} on lot {lot.label}")
    return version


def freeze_version(lot: Lot, version_id: str) -> NegotiationVersion:
    version = get_version(lot, version_id)
    version.frozen = True
    return version


def unfreeze_version(lot: Lot, version_id: str) -> NegotiationVersion:
    # Only the target version: later rounds keep their own state
    version = get_version(lot, version_id)
    version.frozen = False
    return version


def switch_version(lot: Lot, version_id: str) -> NegotiationVersion:
    version = get_version(lot, version_id)
    lot.current_version_id = version.id
    return version


# ============== Version content ==============

def set_technical_note(
    lot: Lot,
    version_id: str,
    company_id: int,
    criterion_id: str,
    sub_criterion_id: Optional[str] = None,
    notation=_UNSET,
    comment: Optional[str] = None,
    positive_comment: Optional[str] = None,
    negative_comment: Optional[str] = None,
) -> TechnicalNote:
    """Write a notation and / or comments. Arguments left out keep their value."""
    version = get_version(lot, version_id)
    _require_editable(version)
    _require_roster_company(lot, version, company_id)

    criterion = lot.get_criterion(criterion_id)
    if criterion is None:
        raise NotFound(f"Criterion {criterion_id} not found")
    if criterion.role == CriterionRole.PRICE:
        raise InvalidInput("The price criterion is scored from price entries", code="PRICE_CRITERION")
    if criterion.sub_criteria:
        if not any(s.id == sub_criterion_id for s in criterion.sub_criteria):
            raise NotFound(f"Sub-criterion {sub_criterion_id} not found in {criterion.label}")
    elif sub_criterion_id is not None:
        raise InvalidInput(f"Criterion {criterion.label} has no sub-criteria", code="NO_SUB_CRITERIA")

    existing = version.find_note(company_id, criterion_id, sub_criterion_id)
    fields = existing.model_dump() if existing else {
        "company_id": company_id,
        "criterion_id": criterion_id,
        "sub_criterion_id": sub_criterion_id,
    }
    if notation is not _UNSET:
        fields["notation"] = NotationLevel(notation) if notation is not None else None
    for name, value in (
        ("comment", comment),
        ("positive_comment", positive_comment),
        ("negative_comment", negative_comment),
    ):
        if value is not None:
            fields[name] = value
    note = TechnicalNote.model_validate(fields)

    if existing is not None:
        version.technical_notes[version.technical_notes.index(existing)] = note
    else:
        version.technical_notes.append(note)
    return note


def set_price_entry(
    lot: Lot,
    version_id: str,
    company_id: int,
    lot_line_id: int,
    dpgf1=_UNSET,
    dpgf2=_UNSET,
) -> PriceEntry:
    """Write the amounts of a company on a line (0 = base). None clears an amount."""
    version = get_version(lot, version_id)
    _require_editable(version)
    _require_roster_company(lot, version, company_id)
    if lot_line_id != config.BASE_LINE_ID and lot.get_line(lot_line_id) is None:
        raise NotFound(f"Lot line {lot_line_id} not found")

    existing = version.find_price(company_id, lot_line_id)
    fields = existing.model_dump() if existing else {"company_id": company_id, "lot_line_id": lot_line_id}
    if dpgf1 is not _UNSET:
        fields["dpgf1"] = dpgf1
    if dpgf2 is not _UNSET:
        fields["dpgf2"] = dpgf2
    entry = PriceEntry.model_validate(fields)

    if existing is not None:
        version.price_entries[version.price_entries.index(existing)] = entry
    else:
        version.price_entries.append(entry)
    return entry


def set_negotiation_decision(
    lot: Lot, version_id: str, company_id: int, decision: NegotiationDecision
) -> NegotiationVersion:
    """Allowed on a frozen version, refused once it is validated."""
    version = get_version(lot, version_id)
    _require_not_validated(version)
    _require_roster_company(lot, version, company_id)
    version.negotiation_decisions[company_id] = NegotiationDecision(decision)
    return version


def set_documents_to_verify(lot: Lot, version_id: str, company_id: int, text: str) -> NegotiationVersion:
    version = get_version(lot, version_id)
    _require_not_validated(version)
    _require_roster_company(lot, version, company_id)
    version.documents_to_verify[company_id] = text
    return version


# ============== Questionnaire ==============

def _questionnaire(version: NegotiationVersion) -> NegotiationQuestionnaire:
    if version.questionnaire is None or not version.questionnaire.activated:
        raise TransitionRejected(
            f"No questionnaire is active on version {version.label}", code="QUESTIONNAIRE_NOT_ACTIVE"
        )
    return version.questionnaire


def _company_questionnaire(version: NegotiationVersion, company_id: int) -> CompanyQuestionnaire:
    questionnaire = _questionnaire(version).for_company(company_id)
    if questionnaire is None:
        raise NotFound(f"Company {company_id} has no questionnaire on version {version.label}")
    return questionnaire


def _question(questionnaire: CompanyQuestionnaire, question_id: str) -> NegotiationQuestion:
    question = next((q for q in questionnaire.questions if q.id == question_id), None)
    if question is None:
        raise NotFound(f"Question {question_id} not found")
    return question


def activate_questionnaire(
    lot: Lot, version_id: str, company_ids: Optional[Iterable[int]] = None
) -> NegotiationQuestionnaire:
    """
    Open the questionnaire for the given companies, by default the ones
    retained for negotiation. Existing questions are kept.
    """
    version = get_version(lot, version_id)
    if company_ids is None:
        company_ids = [
            c.id for c in lot.roster(version)
            if version.decision_for(c.id) == NegotiationDecision.RETAINED
        ]
    company_ids = list(company_ids)
    if not company_ids:
        raise TransitionRejected(
            f"No company is retained for negotiation in {version.label}", code="NO_RETAINED_COMPANY"
        )
    for company_id in company_ids:
        _require_roster_company(lot, version, company_id)

    questionnaire = version.questionnaire or NegotiationQuestionnaire()
    questionnaire.activated = True
    for company_id in company_ids:
        if questionnaire.for_company(company_id) is None:
            questionnaire.questionnaires.append(CompanyQuestionnaire(company_id=company_id))
    version.questionnaire = questionnaire
    return questionnaire


def set_questionnaire_deadline(lot: Lot, version_id: str, deadline: Optional[date]) -> NegotiationQuestionnaire:
    questionnaire = _questionnaire(get_version(lot, version_id))
    questionnaire.deadline_date = deadline
    return questionnaire


def add_question(lot: Lot, version_id: str, company_id: int, text: str = "") -> NegotiationQuestion:
    questionnaire = _company_questionnaire(get_version(lot, version_id), company_id)
    if questionnaire.reception_mode:
        raise TransitionRejected("Questions are locked in reception mode", code="QUESTIONS_LOCKED")
    question = NegotiationQuestion(text=text)
    questionnaire.questions.append(question)
    return question


def update_question_text(
    lot: Lot, version_id: str, company_id: int, question_id: str, text: str
) -> NegotiationQuestion:
    questionnaire = _company_questionnaire(get_version(lot, version_id), company_id)
    if questionnaire.reception_mode:
        raise TransitionRejected("Questions are locked in reception mode", code="QUESTIONS_LOCKED")
    question = _question(questionnaire, question_id)
    question.text = NegotiationQuestion(text=text).text
    return question


def remove_question(lot: Lot, version_id: str, company_id: int, question_id: str) -> None:
    questionnaire = _company_questionnaire(get_version(lot, version_id), company_id)
    if questionnaire.reception_mode:
        raise TransitionRejected("Questions are locked in reception mode", code="QUESTIONS_LOCKED")
    questionnaire.questions.remove(_question(questionnaire, question_id))


def set_reception_mode(lot: Lot, version_id: str, company_id: int, enabled: bool) -> CompanyQuestionnaire:
    questionnaire = _company_questionnaire(get_version(lot, version_id), company_id)
    questionnaire.reception_mode = bool(enabled)
    return questionnaire


def set_question_response(
    lot: Lot, version_id: str, company_id: int, question_id: str, response: str
) -> NegotiationQuestion:
    questionnaire = _company_questionnaire(get_version(lot, version_id), company_id)
    if not questionnaire.reception_mode:
        raise TransitionRejected("Responses are accepted in reception mode only", code="RESPONSES_CLOSED")
    question = _question(questionnaire, question_id)
    question.response = NegotiationQuestion(response=response).response
    return question


# ============== Labels ==============

def version_display_label(label: str) -> str:
    return VERSION_DISPLAY_LABELS.get(label, label)


def synthesis_label(lot: Lot, version_index: int) -> str:
    """Title of the synthesis sheet of a version"""
    total = len(lot.versions)
    if total == 1:
        decisions: List[NegotiationDecision] = list(lot.versions[0].negotiation_decisions.values())
        has_awardee = NegotiationDecision.AWARDEE in decisions
        all_decided = bool(decisions) and all(d != NegotiationDecision.UNDECIDED for d in decisions)
        has_retained = NegotiationDecision.RETAINED in decisions
        if has_awardee or (all_decided and not has_retained):
            return "Synthèse finale"
        return "Synthèse"
    if version_index == 0:
        return "Synthèse initiale"
    if version_index == total - 1:
        return "Synthèse finale"
    return "Synthèse intermédiaire"
