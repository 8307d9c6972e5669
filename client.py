"""
Python client for the School Management API.

Tokens are kept per role in a small JSON file so an admin, a teacher and a
student session can live side by side on one device.
"""

import json
import logging
import os
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

ROLES = ("admin", "teacher", "student")


class ApiError(Exception):
    def __init__(self, status_code: int, detail: Any):
        super().__init__(f"{status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class TokenStore:
    """One ``{token, profile}`` slot per role, persisted as JSON."""

    def __init__(self, path: str):
        self.path = path

    def _read(self) -> Dict[str, dict]:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as fh:
            return json.load(fh)

    def _write(self, data: Dict[str, dict]) -> None:
        with open(self.path, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2)

    def save(self, role: str, token: str, profile: Optional[dict] = None) -> None:
        if role not in ROLES:
            raise ValueError(f"Unknown role: {role}")
        data = self._read()
        data[role] = {"token": token, "profile": profile or {}}
        self._write(data)

    def load(self, role: str) -> Optional[dict]:
        return self._read().get(role)

    def clear(self, role: Optional[str] = None) -> None:
        if role is None:
            self._write({})
            return
        data = self._read()
        data.pop(role, None)
        self._write(data)


class SchoolClient:
    def __init__(self, base_url: str, store: TokenStore, timeout: float = 30):
        self.base_url = base_url.rstrip("/")
        self.store = store
        self.timeout = timeout
        self.session = requests.Session()

    def request(self, method: str, path: str, role: Optional[str] = None, **kwargs) -> requests.Response:
        headers = kwargs.pop("headers", {})
        if role:
            slot = self.store.load(role)
            if not slot:
                raise ApiError(401, f"Not logged in as {role}")
            headers["Authorization"] = f"Bearer {slot['token']}"
        response = self.session.request(method, f"{self.base_url}{path}", headers=headers,
                                        timeout=self.timeout, **kwargs)
        if response.status_code >= 400:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            logger.warning("%s %s failed with %s: %s", method, path, response.status_code, detail)
            raise ApiError(response.status_code, detail)
        return response

    def _json(self, method: str, path: str, role: Optional[str] = None, **kwargs) -> Any:
        return self.request(method, path, role=role, **kwargs).json()

    # ----------------------- Auth -----------------------
    def login(self, role: str, email: str, password: str) -> dict:
        if role not in ROLES:
            raise ValueError(f"Unknown role: {role}")
        data = self._json("POST", f"/api/{role}/login", json={"email": email, "password": password})
        self.store.save(role, data["token"])
        profile = self._json("GET", f"/api/{role}/profile", role=role)
        self.store.save(role, data["token"], profile)
        return profile

    def logout(self, role: str) -> None:
        self.store.clear(role)

    # ----------------------- Admin -----------------------
    def classes(self) -> List[dict]:
        return self._json("GET", "/api/admin/classes", role="admin")["items"]

    def create_class(self, name: str, section: str = "") -> dict:
        return self._json("POST", "/api/admin/classes", role="admin", json={"name": name, "section": section})

    def assign_teachers(self, class_id: str, teacher_ids: List[str]) -> dict:
        return self._json("POST", "/api/admin/classes/assign-teachers", role="admin",
                          json={"class_id": class_id, "teacher_ids": teacher_ids})

    def assign_class_admin(self, class_id: str, teacher_id: str) -> dict:
        return self._json("POST", "/api/admin/classes/assign-class-admin", role="admin",
                          json={"class_id": class_id, "teacher_id": teacher_id})

    def assign_students(self, class_id: str, student_ids: List[str]) -> dict:
        return self._json("POST", "/api/admin/classes/assign-students", role="admin",
                          json={"class_id": class_id, "student_ids": student_ids})

    # ----------------------- Teacher -----------------------
    def take_attendance(self, class_id: str, day: str, records: List[dict]) -> dict:
        return self._json("POST", f"/api/attendance/class/{class_id}/take", role="teacher",
                          json={"date": day, "records": records})

    def add_subject(self, class_id: str, name: str, credits: int = 1) -> dict:
        return self._json("POST", f"/api/subjects/class/{class_id}", role="teacher",
                          json={"name": name, "credits": credits})["subject"]

    def assign_subject_teacher(self, class_id: str, subject_id: str, teacher_id: str) -> dict:
        return self._json("POST", f"/api/subjects/class/{class_id}/subject/{subject_id}/assign", role="teacher",
                          json={"teacher_id": teacher_id})

    def submit_marks(self, class_id: str, student_id: str, exam_id: str, subject_id: str, marks: float) -> dict:
        path = f"/api/marks/class/{class_id}/student/{student_id}/exam/{exam_id}/subject/{subject_id}"
        return self._json("POST", path, role="teacher", json={"marks_scored": marks})

    def download_export(self, class_id: str, exam_id: str, fmt: str, path: str) -> str:
        response = self.request("GET", f"/api/marks/class/{class_id}/exam/{exam_id}/export", role="teacher",
                                params={"format": fmt})
        with open(path, "wb") as fh:
            fh.write(response.content)
        logger.info("Saved %s export to %s", fmt, path)
        return path

    # ----------------------- Student -----------------------
    def my_attendance(self, timeframe: str = "all") -> dict:
        return self._json("GET", "/api/attendance/student/stats", role="student", params={"timeframe": timeframe})

    def my_academic_report(self) -> dict:
        return self._json("GET", "/api/marks/student/academic-report", role="student")
