from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from schemas.interview import CamelModel


# structured reply of the resumeAnalyzer persona (wire keys as the model writes them)
class SuggestedRole(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: str
    reason: str = ""
    focusArea: str = ""


class ResumeAnalysis(BaseModel):
    model_config = ConfigDict(extra="ignore")

    candidateName: str = ""
    currentRole: str = ""
    experienceLevel: str = ""
    coreStrengths: List[str] = []
    greeting: str = ""
    strengthsSummary: str = ""
    suggestedRoles: List[SuggestedRole] = []
    suggestion: str = ""


class AudioPayload(CamelModel):
    data: str  # base64
    mime_type: str = "audio/webm"
    duration_seconds: Optional[float] = None


class HistoryItem(CamelModel):
    role: str
    content: Optional[str] = None
    text: Optional[str] = None


class ChatIn(CamelModel):
    instruction_type: str = "interviewer"
    interview_context: Dict[str, Any] = {}
    history: List[HistoryItem] = []
    message: Optional[str] = None
    model_name: Optional[str] = None
    language: Optional[str] = None
    max_output_tokens: Optional[int] = Field(None, ge=16, le=8192)
    use_structured_output: bool = True
    question_index: Optional[int] = None
    interaction_id: Optional[str] = None
    interview_id: Optional[str] = None
    start: bool = False
    audio: Optional[AudioPayload] = None
    flatten: bool = True


class FeedbackIn(CamelModel):
    transcript: Optional[str] = None
    language: str = "English"
    interview_id: Optional[str] = None


class ResumeIn(CamelModel):
    resume_text: str = Field(..., min_length=1)
    language: str = "English"


class TTSIn(CamelModel):
    text: str = Field(..., min_length=1, max_length=5000)
    language: Optional[str] = None
    voice: Optional[str] = None
    interview_id: Optional[str] = None
    turn_id: Optional[str] = None
    interaction_id: Optional[str] = None


class HistoryRef(CamelModel):
    history_id: str
    interaction_id: Optional[str] = None


class TranscribeIn(CamelModel):
    interview_id: str
    history_ids: List[HistoryRef] = []
    language: Optional[str] = None
    background: bool = False
