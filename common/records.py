"""
Plain read models for feedback and screenshot rows.

The persistence layer hands these out instead of ORM instances so adapters
and the worker never touch a session.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat() + "Z" if value.tzinfo is None else value.isoformat()


@dataclass
class ScreenshotRecord:
    id: str
    screenshot_url: str
    dom_tree: str
    tab_url: str
    tab_title: str
    timestamp: int
    page_info: Optional[Dict[str, Any]] = None
    temp_comment: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_api(self, include_dom: bool = True) -> Dict[str, Any]:
        """camelCase JSON shape used by the HTTP API."""
        data = {
            "id": self.id,
            "screenshotUrl": self.screenshot_url,
            "tabUrl": self.tab_url,
            "tabTitle": self.tab_title,
            "timestamp": self.timestamp,
            "pageInfo": self.page_info,
            "tempComment": self.temp_comment,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }
        if include_dom:
            data["domTree"] = self.dom_tree
        return data


@dataclass
class FeedbackRecord:
    id: int
    comment: str
    timestamp: int
    screenshot_data_id: Optional[str] = None
    user_agent: Optional[str] = None
    url: Optional[str] = None
    user_name: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    screenshot_data: Optional[ScreenshotRecord] = None

    def to_api(self, include_dom: bool = True) -> Dict[str, Any]:
        return {
            "id": self.id,
            "comment": self.comment,
            "screenshotDataId": self.screenshot_data_id,
            "timestamp": self.timestamp,
            "userAgent": self.user_agent,
            "url": self.url,
            "userName": self.user_name,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "screenshotData": (
                self.screenshot_data.to_api(include_dom=include_dom) if self.screenshot_data else None
            ),
        }
