"""
Locust load script for the property messaging API.

Simulates buyer/seller inbox behavior:
- List threads (/api/v1/threads)
- Open a thread's messages, then poll deltas using after_id
- Occasionally send a message and mark the thread read
- Poll /api/v1/inbox/unread with ETag caching

Tokens are minted locally with the shared signing key, the same way the
identity service does (``sub`` = user email).

Configure with env vars or Locust UI:
- HOST: pass via `--host http://localhost:8000`
- PROPCHAT_TEST_EMAILS: CSV of user emails present in the users mirror
- PROPCHAT_BEARER: fixed bearer token (skips local minting)
- SECRET_KEY / ALGORITHM: must match the server settings
- PROPCHAT_SEND_RATIO: probability a send task actually posts (default 0.3)

Run:
  locust -f load/locustfile.py --host http://localhost:8000
"""

from __future__ import annotations

import logging
import os
import random
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from jose import jwt
from locust import HttpUser, between, events, task


# --- Config -------------------------------------------------------------------

DEFAULT_EMAILS = ["buyer1@example.com", "seller1@example.com", "buyer2@example.com"]
SECRET_KEY = os.getenv("SECRET_KEY", "fallback_secret_for_dev_only")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
SEND_RATIO = float(os.getenv("PROPCHAT_SEND_RATIO", "0.3") or 0.3)


def _load_emails() -> List[str]:
    raw = os.getenv("PROPCHAT_TEST_EMAILS", "").strip()
    emails = [e.strip().lower() for e in raw.split(",") if e.strip()]
    return emails or DEFAULT_EMAILS


TEST_EMAILS = _load_emails()


# --- Helpers ------------------------------------------------------------------

def _mint_token(email: str) -> str:
    expire = datetime.now(timezone.utc) + timedelta(hours=2)
    return jwt.encode({"sub": email, "exp": expire}, SECRET_KEY, algorithm=ALGORITHM)


def _auth_header(token: Optional[str]) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"} if token else {}


def _safe_json(resp):
    try:
        return resp.json()
    except ValueError:
        return {}


# --- The User Model -----------------------------------------------------------

class InboxUser(HttpUser):
    wait_time = between(1, 3)

    def on_start(self):
        self.token = os.getenv("PROPCHAT_BEARER", "").strip() or _mint_token(random.choice(TEST_EMAILS))
        self.etag_unread: Optional[str] = None
        self.threads: List[int] = []
        self.last_ids: Dict[int, Optional[int]] = {}

    @task(5)
    def list_threads(self):
        r = self.client.get(
            "/api/v1/threads",
            params={"limit": 30},
            headers=_auth_header(self.token),
            name="/threads",
        )
        if r.status_code != 200:
            return
        items = _safe_json(r) or []
        self.threads = [int(it["thread_id"]) for it in items if it.get("thread_id")]
        for tid in self.threads:
            self.last_ids.setdefault(tid, None)

    @task(9)
    def messages_open_or_delta(self):
        if not self.threads:
            return
        tid = random.choice(self.threads)
        last = self.last_ids.get(tid)
        params = {"limit": 60} if last is None else {"after_id": last}
        r = self.client.get(
            f"/api/v1/threads/{tid}/messages",
            headers=_auth_header(self.token),
            params=params,
            name="/threads/{id}/messages",
        )
        if r.status_code != 200:
            return
        items = _safe_json(r) or []
        if items:
            self.last_ids[tid] = int(items[-1]["id"])

    @task(2)
    def send_and_read(self):
        if not self.threads or random.random() > SEND_RATIO:
            return
        tid = random.choice(self.threads)
        self.client.post(
            f"/api/v1/threads/{tid}/messages",
            json={"content": "Is this still available?", "client_token": uuid.uuid4().hex},
            headers=_auth_header(self.token),
            name="/threads/{id}/messages [send]",
        )
        self.client.post(
            f"/api/v1/threads/{tid}/read",
            headers=_auth_header(self.token),
            name="/threads/{id}/read",
        )

    @task(3)
    def inbox_unread(self):
        headers = _auth_header(self.token)
        if self.etag_unread:
            headers["If-None-Match"] = self.etag_unread
        r = self.client.get("/api/v1/inbox/unread", headers=headers, name="/inbox/unread")
        if r.status_code == 200:
            self.etag_unread = r.headers.get("ETag")


# --- Optional event hooks -----------------------------------------------------

@events.test_start.add_listener
def on_test_start(environment, **kwargs):
    logging.getLogger("locust").info("Starting test with users: %s", ", ".join(TEST_EMAILS))


@events.test_stop.add_listener
def on_test_stop(environment, **kwargs):
    logging.getLogger("locust").info("Test finished")
