# captcha_gate/app.py
"""
Development sink for verification submissions.

Accepts the POST the delivery channel sends and keeps submissions in memory
so the gate can be exercised end to end. It is not a production store.
"""
import asyncio
import base64
import logging
import secrets
import uuid
from typing import Any, Dict, List

from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from pydantic import BaseModel

from captcha_gate.core.config import load_settings
from captcha_gate.utils.helpers import iso_timestamp

# ---------------- Config ----------------
SETTINGS = load_settings()

logging.basicConfig(level=SETTINGS.log_level, format="%(asctime)s %(levelname)s [%(name)s.%(funcName)s] %(message)s")
log = logging.getLogger(__name__)
log.info("Loaded config from: %s", SETTINGS.cfg_file_used or "<defaults>")


# ---------------- Security / request-id middleware ----------------
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    CSP_DEFAULT = (
        "default-src 'none'; "
        "base-uri 'none'; "
        "form-action 'self'"
    )

    async def dispatch(self, request: Request, call_next):
        resp = await call_next(request)
        resp.headers.setdefault("Content-Security-Policy", self.CSP_DEFAULT)
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        return resp

class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or base64.urlsafe_b64encode(secrets.token_bytes(9)).rstrip(b"=").decode()
        request.state.request_id = rid
        resp = await call_next(request)
        resp.headers["X-Request-ID"] = rid
        return resp


# ---------------- Models ----------------
class CaptchaSubmission(BaseModel):
    user_data: Dict[str, Any]
    verification_type: str
    source: str


class SubmissionStore:
    """In-memory submissions keyed by id"""

    def __init__(self):
        self._items: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def add(self, submission: CaptchaSubmission, client_ip: str) -> str:
        submission_id = uuid.uuid4().hex
        async with self._lock:
            self._items[submission_id] = {
                "id": submission_id,
                "received_at": iso_timestamp(),
                "client_ip": client_ip,
                **submission.model_dump(),
            }
        return submission_id

    async def get(self, submission_id: str):
        async with self._lock:
            return self._items.get(submission_id)

    async def all(self) -> List[Dict[str, Any]]:
        async with self._lock:
            return list(self._items.values())

    async def clear(self):
        async with self._lock:
            self._items.clear()


STORE = SubmissionStore()

app = FastAPI(title="captcha-gate dev sink")
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestIDMiddleware)


def _client_ip(req: Request) -> str:
    forwarded = req.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if req.headers.get("x-real-ip"):
        return req.headers.get("x-real-ip")
    return req.client.host if req.client else "unknown"


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/api/captcha")
async def submit_captcha(body: CaptchaSubmission, req: Request):
    session_id = body.user_data.get("sessionId")
    if not session_id:
        raise HTTPException(status_code=400, detail="user_data.sessionId is required")
    submission_id = await STORE.add(body, _client_ip(req))
    log.info("Stored submission %s for %s (type=%s source=%s tgid=%s)",
             submission_id, session_id, body.verification_type, body.source, body.user_data.get("tgid"))
    return JSONResponse({"status": "success", "id": submission_id, "sessionId": session_id})


@app.get("/api/captcha/{submission_id}")
async def get_submission(submission_id: str):
    item = await STORE.get(submission_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Submission not found")
    return item
