from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict


class QueuedRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    local_id: str
    category: str
    parent_id: Optional[str]
    remote_id: Optional[str]
    status: str
    error_message: Optional[str]
    retry_count: int
    upload_progress: int
    file_name: Optional[str]
    mime_type: Optional[str]
    size_bytes: int
    payload: Dict[str, Any]
    created_at: datetime
