from typing import Optional

from schemas.interview import CamelModel


class RefreshUrlIn(CamelModel):
    url: Optional[str] = None
    blob_key: Optional[str] = None


class UploadOut(CamelModel):
    recording_id: str
    blob_key: str
    status: str  # linked | parked
    question_index: int
