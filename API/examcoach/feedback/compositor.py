from __future__ import annotations

import json

from examcoach.feedback.policy import (
    HEADING_FEEDBACK,
    HEADING_QUESTION,
    HEADING_REMEDIATION,
    HEADING_STATUS,
    HEADING_STUDENT_ANSWER,
    NEVER_REVEAL_RULE,
    ONE_QUESTION_RULE,
)
from examcoach.orchestrator.states import Speaker, TurnKind
from examcoach.schemas.feedback import ConversationTurn, ExamDocument, SessionState

IMAGE_EXAM_NOTE = "[De toets is als afbeelding bijgevoegd. Lees de vragen en antwoorden uit de afbeelding.]"

_SECTIONS_HINT = (
    f"### {HEADING_QUESTION}: ... ### {HEADING_STUDENT_ANSWER}: ... "
    f"### {HEADING_FEEDBACK}: ... ### {HEADING_REMEDIATION}: ..."
)

_INITIAL_ENVELOPE = """{
  "summary": "KORTE samenvatting met ✅ en ⚠️ (max 3-4 zinnen)",
  "initialGrade": 7.2,
  "learningObjectives": ["Ik kan ...", "Ik begrijp ...", "Ik kan toepassen ..."],
  "totalQuestions": 5,
  "firstQuestionFeedback": "%s"
}""" % _SECTIONS_HINT

_STATUS_EXAMPLE = '{"questionResolved": true, "isComplete": false, "finalGrade": null}'


def exam_body(exam: ExamDocument) -> str:
    """Exam text as it appears in a prompt; image payloads travel as attachments instead."""
    if exam.inline_image() is not None:
        return IMAGE_EXAM_NOTE
    return exam.text


def render_progress(progress: dict) -> str:
    ordered = {str(idx): getattr(status, "value", status) for idx, status in sorted(progress.items())}
    return json.dumps(ordered, ensure_ascii=False)


def render_history(history: list[ConversationTurn]) -> str:
    if not history:
        return "Geen eerdere conversatie"
    lines = []
    for i, turn in enumerate(history, start=1):
        label = "LEERLING" if turn.speaker == Speaker.STUDENT else "DOCENT"
        lines.append(f"{i}. {label}: {turn.content}")
    return "\n".join(lines)


def _compose_initial(policy: str, exam: ExamDocument) -> str:
    return f"""{policy}

TAAK: Analyseer deze ingeleverde scheikundetoets en geef de eerste feedback.

TOETS INHOUD:
{exam_body(exam)}

BESTANDSNAAM: {exam.source_name}

Geef je antwoord als één JSON-object in precies dit formaat:
{_INITIAL_ENVELOPE}

- "totalQuestions" is het aantal vragen in de toets (minimaal 1).
- "initialGrade" is een getal van 0 tot 10.
- "firstQuestionFeedback" bevat ALLEEN de feedback op vraag 1, in de gestructureerde vorm met ### koppen.
- {ONE_QUESTION_RULE}
- {NEVER_REVEAL_RULE}"""


def _compose_continue(policy: str, exam: ExamDocument, state: SessionState, latest_student_input: str) -> str:
    last = state.last_feedback
    remediation = last.remediation_question or "Eerste interactie"
    original_question = last.original_question or "Nog niet bepaald"
    answer_echo = last.student_answer_echo or "Nog niet bepaald"
    return f"""{policy}

CONTEXT:
- Je bent bezig met vraag {state.current_question_index} van de {state.total_questions} vragen van de toets.
- Dit was je laatste remedierende vraag aan de leerling: "{remediation}"
- ORIGINELE VRAAG uit de toets: "{original_question}"
- OORSPRONKELIJK ANTWOORD van de leerling: "{answer_echo}"
- De leerling antwoordt NU op jouw remedierende vraag: "{latest_student_input}"
- Voortgang vragen: {render_progress(state.progress)}

CONVERSATIE GESCHIEDENIS:
{render_history(state.history)}

OORSPRONKELIJKE TOETS:
{exam_body(exam)}

TAAK:
1. Reageer specifiek op het antwoord "{latest_student_input}" op je remedierende vraag "{remediation}".
2. Is het antwoord goed of voldoende, ga dan door naar de volgende vraag uit de toets.
3. Is het antwoord nog niet goed, geef dan een hint en stel een nieuwe remedierende vraag over dezelfde toetsvraag.
4. Zijn alle vragen behandeld, geef dan een eindoverzicht met het cijfer na remediëring.
5. Verwijs naar eerdere antwoorden als dat helpt.

Gebruik de gestructureerde vorm met ### koppen.
- {ONE_QUESTION_RULE}
- {NEVER_REVEAL_RULE}

Sluit je antwoord ALTIJD af met deze kop en één JSON-object op de volgende regel:
### {HEADING_STATUS}:
{_STATUS_EXAMPLE}
- "questionResolved": true als vraag {state.current_question_index} nu voldoende begrepen is, anders false.
- "isComplete": true alleen als alle {state.total_questions} vragen zijn behandeld.
- "finalGrade": het cijfer (0-10) na remediëring als "isComplete" true is, anders null."""


def compose(
    policy: str,
    exam: ExamDocument,
    state: SessionState | None,
    latest_student_input: str | None,
    turn_kind: TurnKind,
) -> str:
    """Build the complete instruction string for one oracle call. Pure and deterministic."""
    if turn_kind == TurnKind.INITIAL:
        return _compose_initial(policy, exam)
    if state is None:
        raise ValueError("a Continue turn needs the current session state")
    if not (latest_student_input or "").strip():
        raise ValueError("a Continue turn needs the student's latest input")
    return _compose_continue(policy, exam, state, latest_student_input.strip())
