# backend/services/prompts.py
"""
Server-side catalog of persona instructions.

Clients only ever send an `instructionType`; the text lives here. Templates
can be overridden from PROMPTS_DIR (`<name>.txt`). With PROMPTS_HOT_RELOAD on
the directory is re-read on every lookup, otherwise once at import.
PROMPTS_VERSION is a hash over the active templates and feeds the TTS cache
key, so editing a prompt never serves audio cached under the old one.
"""
import hashlib
import logging
import os
import threading
from typing import Any, Dict, Optional

from core.config import settings
from core.errors import ValidationError

log = logging.getLogger(__name__)

KICKOFF_MESSAGE = (
    "Start the interview now. Introduce yourself briefly and ask "
    "'Tell me about yourself' as your first question."
)
COORDINATOR_OPENER = "Hi! I'd like to set up a practice interview."
RESUME_BOOTSTRAP_USER = (
    "Here is my resume. Please use it to tailor the interview questions, "
    "specifically asking about my projects and past experience."
)
RESUME_BOOTSTRAP_MODEL = (
    "I have reviewed your resume. I will now conduct the interview focusing on "
    "your specific experiences and the target role."
)

LANGUAGE_DIRECTIVE = (
    "\n\nIMPORTANT: You must conduct this entire interview/conversation in {language}. "
    "Ensure all your responses are in {language}."
)
ONE_SHOT_LANGUAGE_DIRECTIVE = (
    "\n\nIMPORTANT: Write every text field of your JSON answer strictly in {language}. "
    "Keep the JSON keys in English."
)

DEFAULT_TEMPLATES: Dict[str, str] = {
    "coordinator": """You are the MockMate interview coordinator. Your job is to find out, through a short and friendly conversation, three things about the practice interview the candidate wants:
1. the target role (for example "Backend Engineer"),
2. the focus area (for example "Go and distributed systems"),
3. the seniority level (for example "Junior", "Mid", "Senior").

Ask for whatever is still missing, one question at a time, in one or two sentences. Do not start interviewing.
Answer with a JSON object: {{"message": "<what you say to the candidate>", "READY": false}}.
Only when all three are known, answer with {{"message": "<a one-sentence confirmation>", "READY": true, "role": "...", "focusArea": "...", "level": "..."}}.""",

    "resumeCoordinator": """You are the MockMate interview coordinator. The candidate uploaded a resume and an analyst suggested these practice roles:
{suggested_roles}

Help the candidate pick exactly one of them (or a close variant they ask for) and agree on the seniority level. Keep every reply to one or two sentences.
Answer with a JSON object: {{"message": "<what you say to the candidate>", "READY": false}}.
Once the role, focus area and level are settled, answer with {{"message": "<a one-sentence confirmation>", "READY": true, "role": "...", "focusArea": "...", "level": "..."}}.""",

    "interviewer": """You are a professional interviewer conducting a spoken mock interview for {subject}.
Focus area: {focus_area}. Candidate level: {level}.{resume_line}

Rules:
- Ask exactly {total_questions} questions in total, one at a time. The introduction plus "Tell me about yourself" counts as question 1.
- Each reply is 2-4 short sentences in a natural spoken style: briefly react to the previous answer, then ask the next question.
- Never ask two questions in one reply and never answer for the candidate.
- If an answer is silent or empty, acknowledge it politely and move on.
- After evaluating the answer to question {total_questions}, thank the candidate, close the interview and set "isInterviewComplete" to true.

Always answer with exactly one JSON object and nothing else:
{{"response": "<what you say>", "questionNumber": <number of the question you are asking>, "isInterviewComplete": <true|false>}}""",

    "setupVerifier": """Extract the interview setup from the candidate's single message: the target role, the focus area and the seniority level.
Use null for anything that is not clearly stated. Do not guess.
Answer with one JSON object and nothing else:
{{"message": "<one short sentence to the candidate>", "READY": <true only if all three are known>, "role": <string|null>, "focusArea": <string|null>, "level": <string|null>}}""",

    "feedbackJudge": """You are a senior hiring panel reviewing the transcript of a mock interview.
Score the candidate from 0 to 100 on: overall performance, communication, technical depth, problem solving and domain knowledge.
List up to five concrete strengths and up to five concrete weaknesses, and finish with one actionable suggestion.
Judge only what the candidate actually said. Answers marked [Silent] or [Transcription Failed] count as unanswered.

Answer with one JSON object and nothing else:
{{"overallScore": 0, "communicationScore": 0, "technicalScore": 0, "problemSolvingScore": 0, "domainKnowledgeScore": 0, "strengths": ["..."], "weaknesses": ["..."], "suggestion": "..."}}""",

    "resumeAnalyzer": """Analyze the resume text you are given and extract structured information about the candidate.
Identify their core strengths, suggest 2-3 interview roles they would be well suited for, and provide a brief professional assessment.

Answer with one JSON object and nothing else:
{{"candidateName": "...", "currentRole": "...", "experienceLevel": "fresher|junior|mid-level|senior|lead|manager|executive", "coreStrengths": ["..."], "greeting": "<one sentence addressing the candidate by name>", "strengthsSummary": "<1-2 sentences>", "suggestedRoles": [{{"role": "...", "reason": "...", "focusArea": "..."}}], "suggestion": "<one sentence asking them to choose a role>"}}""",
}

# one-shot personas get the JSON-specific language directive
_ONE_SHOT = {"feedbackJudge", "resumeAnalyzer"}

_lock = threading.Lock()
_templates: Optional[Dict[str, str]] = None
_version: Optional[str] = None


def _load_templates() -> Dict[str, str]:
    templates = dict(DEFAULT_TEMPLATES)
    root = settings.prompts_dir
    if not root:
        return templates
    for name in DEFAULT_TEMPLATES:
        path = os.path.join(root, f"{name}.txt")
        if os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                templates[name] = f.read()
    return templates


def _hash(templates: Dict[str, str]) -> str:
    h = hashlib.sha256()
    for name in sorted(templates):
        h.update(name.encode("utf-8"))
        h.update(b"\x00")
        h.update(templates[name].encode("utf-8"))
        h.update(b"\x00")
    return h.hexdigest()[:16]


def _refresh() -> None:
    global _templates, _version
    templates = _load_templates()
    version = _hash(templates)
    with _lock:
        if version != _version and _version is not None:
            log.info("prompt catalog reloaded", extra={"prompts_version": version})
        _templates, _version = templates, version


def templates() -> Dict[str, str]:
    if _templates is None or settings.prompts_hot_reload:
        _refresh()
    return _templates


def prompts_version() -> str:
    if _version is None or settings.prompts_hot_reload:
        _refresh()
    return _version


def is_known(name: Optional[str]) -> bool:
    return bool(name) and name in DEFAULT_TEMPLATES


def _with_language(text: str, language: Optional[str], one_shot: bool = False) -> str:
    if language and language.strip().lower() != "english":
        directive = ONE_SHOT_LANGUAGE_DIRECTIVE if one_shot else LANGUAGE_DIRECTIVE
        return text + directive.format(language=language.strip())
    return text


# ---------------------------
# Persona builders
# ---------------------------

def coordinator(language: str = "English") -> str:
    return _with_language(templates()["coordinator"].format(), language)


def resume_coordinator(language: str = "English", suggested_roles: Any = None) -> str:
    lines = []
    for item in suggested_roles or []:
        if isinstance(item, dict):
            role = item.get("role") or ""
            focus = item.get("focusArea") or ""
            reason = item.get("reason") or ""
            lines.append(f"- {role} (focus: {focus}) - {reason}".strip())
        elif item:
            lines.append(f"- {item}")
    roles = "\n".join(lines) or "- (no suggestions available; ask the candidate what they want to practise)"
    return _with_language(templates()["resumeCoordinator"].format(suggested_roles=roles), language)


def interviewer(
    role: Optional[str] = None,
    jd: Optional[str] = None,
    focus_area: Optional[str] = None,
    level: Optional[str] = None,
    has_resume: bool = False,
    total_questions: Optional[int] = None,
    language: str = "English",
) -> str:
    if jd and jd.strip():
        subject = f"the position described in this job description:\n---\n{jd.strip()}\n---"
    else:
        subject = f"a {role or 'software engineering'} position"
    resume_line = (
        "\nThe candidate shared their resume earlier in the conversation; ask about their real projects and experience."
        if has_resume else ""
    )
    text = templates()["interviewer"].format(
        subject=subject,
        focus_area=focus_area or "general",
        level=level or "not specified",
        total_questions=int(total_questions or settings.default_total_questions),
        resume_line=resume_line,
    )
    return _with_language(text, language)


def setup_verifier(language: str = "English") -> str:
    return _with_language(templates()["setupVerifier"].format(), language)


def feedback_judge(language: str = "English") -> str:
    return _with_language(templates()["feedbackJudge"].format(), language, one_shot=True)


def resume_analyzer(language: str = "English") -> str:
    return _with_language(templates()["resumeAnalyzer"].format(), language, one_shot=True)


def build(name: str, context: Optional[Dict[str, Any]] = None, language: str = "English") -> str:
    """Resolve an instruction by name. `context` carries the interview parameters."""
    ctx = context or {}
    if name == "coordinator":
        return coordinator(language)
    if name == "resumeCoordinator":
        analysis = ctx.get("resumeAnalysis") or {}
        return resume_coordinator(language, ctx.get("suggestedRoles") or analysis.get("suggestedRoles"))
    if name == "interviewer":
        return interviewer(
            role=ctx.get("role"),
            jd=ctx.get("jd"),
            focus_area=ctx.get("focusArea"),
            level=ctx.get("level"),
            has_resume=bool(ctx.get("hasResume")),
            total_questions=ctx.get("totalQuestions"),
            language=language,
        )
    if name == "setupVerifier":
        return setup_verifier(language)
    if name == "feedbackJudge":
        return feedback_judge(language)
    if name == "resumeAnalyzer":
        return resume_analyzer(language)
    raise ValidationError(f"unknown instructionType: {name!r}")
