"""
Request/response schemas for the feedback service.

Request bodies keep most fields optional: the extension sends partial
payloads and the routes answer missing values with 400 rather than 422.
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel


class FeedbackCreateRequest(BaseModel):
    comment: Optional[str] = None
    uploadedDataId: Optional[str] = None
    url: Optional[str] = None
    userAgent: Optional[str] = None
    userName: Optional[str] = None
    timestamp: Optional[Union[int, float]] = None
    githubRepository: Optional[str] = None
    errorDetails: Optional[Dict[str, Any]] = None


class FeedbackCreateResponse(BaseModel):
    success: bool
    id: int
    message: str


class MessageResponse(BaseModel):
    success: bool
    message: str


class FeedbackStats(BaseModel):
    total: int
    today: int
    thisWeek: int


class FeedbackListResponse(BaseModel):
    success: bool
    feedbacks: List[Dict[str, Any]]
    count: int
    total: int
    page: int
    limit: int
    totalPages: int
    stats: FeedbackStats


class FeedbackUpdateRequest(BaseModel):
    # Any: a non-string comment is a 400, not a schema error
    comment: Any = None


class CreateTaskResponse(BaseModel):
    success: bool
    taskId: Optional[Union[int, str]] = None
    taskUrl: Optional[str] = None
    message: str


class UploadScreenshotDomRequest(BaseModel):
    screenshot: Optional[str] = None
    domTree: Optional[str] = None
    pageInfo: Optional[Dict[str, Any]] = None
    timestamp: Optional[Union[int, float]] = None


class UploadScreenshotDomResponse(BaseModel):
    success: bool
    id: str
    message: str


class TempCommentRequest(BaseModel):
    tempComment: Any = None


class PresignedUrlRequest(BaseModel):
    fileName: Optional[str] = None
    contentType: Optional[str] = None
    # Older extension builds send fileType
    fileType: Optional[str] = None
    feedbackId: Optional[int] = None


class PresignedUrlResponse(BaseModel):
    success: bool
    uploadUrl: str
    key: str
    fileUrl: str


class LocalUploadResponse(BaseModel):
    success: bool
    key: str
    fileUrl: str
    message: str


class ErrorLogRequest(BaseModel):
    source: Optional[str] = None
    level: Optional[str] = None
    message: Optional[str] = None
    details: Any = None
    url: Optional[str] = None
    userAgent: Optional[str] = None


class ErrorLogCreateResponse(BaseModel):
    success: bool
    id: str
    message: str


class ErrorLogListResponse(BaseModel):
    success: bool
    logs: List[Dict[str, Any]]
    totalCount: int
    limit: int
