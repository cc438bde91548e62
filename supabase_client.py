# supabase_client.py
import threading
from typing import Callable, Dict, List, Optional, Sequence

import httpx
import structlog
from postgrest.exceptions import APIError
from supabase import Client, create_client

from config import Settings
from models import Subject, Topic

log = structlog.get_logger()

SUBJECT_COLUMNS = "id,name,topics,created_at,version"


class StoreError(RuntimeError):
    pass


class ConflictError(StoreError):
    """A conditional write matched no row: the subject changed since it was read."""


class _SubjectFeed(threading.Thread):
    """
    Polls one owner's subject collection and pushes the full list whenever it
    differs from the previous fetch. A failed fetch is terminal for the feed.

    Fetch and push happen under one lock, so a poll that started before a
    write can never be delivered after the write's own refresh.
    """

    def __init__(self, store: "SubjectStore", owner_id: str,
                 on_next: Callable[[List[Subject]], None],
                 on_error: Callable[[Exception], None],
                 interval: float):
        super().__init__(name=f"subject-feed-{owner_id}", daemon=True)
        self._store = store
        self._owner_id = owner_id
        self._on_next = on_next
        self._on_error = on_error
        self._interval = interval
        self._last: Optional[List[Subject]] = None
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._wake = threading.Event()

    def run(self):
        try:
            while not self._closed.is_set():
                try:
                    self._fetch()
                except StoreError as e:
                    log.warning("store.feed_error", owner_id=self._owner_id, error=str(e))
                    self._fail(e)
                    return
                except Exception as e:
                    log.exception("store.feed_crashed", owner_id=self._owner_id)
                    self._fail(e)
                    return
                self._wake.wait(self._interval)
                self._wake.clear()
        finally:
            self._store._release(self._owner_id, self)

    def _fetch(self) -> None:
        with self._lock:
            subjects = self._store.list_subjects(self._owner_id)
            if subjects != self._last and not self._closed.is_set():
                self._last = subjects
                self._on_next(subjects)

    def _fail(self, exc: Exception) -> None:
        if not self._closed.is_set():
            self._on_error(exc)

    def refresh(self) -> None:
        """Fetch on the caller's thread; used after a write so its result is pushed before it returns."""
        try:
            self._fetch()
        except StoreError as e:
            # the write itself succeeded; leave the rest to the polling loop
            log.warning("store.refresh_failed", owner_id=self._owner_id, error=str(e))
            self.poke()

    def poke(self):
        self._wake.set()

    def close(self):
        self._closed.set()
        self._wake.set()


class SubjectStore:
    """
    Per-owner subject documents in a Supabase table. Each row is one subject
    with its topics embedded as a jsonb array.
    """

    def __init__(self, settings: Settings, token_provider: Callable[[], str]):
        self.settings = settings
        self._token_provider = token_provider
        self._client: Optional[Client] = None
        self._client_lock = threading.Lock()
        self._feeds: Dict[str, _SubjectFeed] = {}
        self._feeds_lock = threading.Lock()

    def get_client(self) -> Client:
        if self._client is None:
            self._client = create_client(self.settings.supabase_url, self.settings.supabase_key)
        try:
            token = self._token_provider()
        except RuntimeError as e:
            raise StoreError(f"No session for store access: {e}") from e
        # attach the user's access token so RLS policies work
        self._client.postgrest.auth(token)
        return self._client

    def _execute(self, build):
        with self._client_lock:
            try:
                query = build(self.get_client().table(self.settings.subjects_table))
                return query.execute()
            except (APIError, httpx.HTTPError) as e:
                raise StoreError(str(e)) from e

    # ---------- Reads ----------
    def list_subjects(self, owner_id: str) -> List[Subject]:
        res = self._execute(
            lambda t: t.select(SUBJECT_COLUMNS).eq("user_id", owner_id).order("created_at")
        )
        return [Subject.from_row(row) for row in (res.data or [])]

    # ---------- Live feed ----------
    def subscribe_to_subjects(self, owner_id: str,
                              on_next: Callable[[List[Subject]], None],
                              on_error: Callable[[Exception], None]) -> Callable[[], None]:
        """
        Open the live subject feed for owner_id. Returns an unsubscribe handle
        that is safe to call more than once. One feed per owner per store.
        """
        with self._feeds_lock:
            if owner_id in self._feeds:
                raise StoreError("A subject feed is already open for this user.")
            feed = _SubjectFeed(self, owner_id, on_next, on_error, self.settings.poll_interval)
            self._feeds[owner_id] = feed
        feed.start()
        log.info("store.feed_opened", owner_id=owner_id)

        def unsubscribe():
            feed.close()
            self._release(owner_id, feed)

        return unsubscribe

    def _release(self, owner_id: str, feed: _SubjectFeed) -> None:
        with self._feeds_lock:
            if self._feeds.get(owner_id) is feed:
                del self._feeds[owner_id]
                log.info("store.feed_closed", owner_id=owner_id)

    def _after_write(self, owner_id: str) -> None:
        with self._feeds_lock:
            feed = self._feeds.get(owner_id)
        if feed is not None:
            feed.refresh()

    # ---------- Writes ----------
    def create_subject(self, owner_id: str, doc: dict) -> str:
        payload = {
            "user_id": owner_id,
            "name": doc["name"],
            "topics": list(doc.get("topics") or []),
        }
        if doc.get("createdAt"):
            payload["created_at"] = doc["createdAt"]
        res = self._execute(lambda t: t.insert(payload))
        if not res.data:
            raise StoreError("Insert returned no row.")
        self._after_write(owner_id)
        return str(res.data[0]["id"])

    def replace_topics(self, owner_id: str, subject_id: str, topics: Sequence[Topic],
                       expected_version: Optional[int] = None) -> None:
        """
        Replace the whole topic array of one subject. With expected_version the
        write only applies if the row still carries that version, and bumps it.
        """
        payload = {"topics": [t.to_doc() for t in topics]}
        if expected_version is not None:
            payload["version"] = expected_version + 1

        def build(t):
            q = t.update(payload).eq("id", subject_id).eq("user_id", owner_id)
            if expected_version is not None:
                q = q.eq("version", expected_version)
            return q

        res = self._execute(build)
        if not res.data:
            if expected_version is not None:
                raise ConflictError(f"Subject {subject_id} changed since version {expected_version}.")
            raise StoreError(f"Subject {subject_id} not found.")
        self._after_write(owner_id)

    def delete_subject(self, owner_id: str, subject_id: str) -> None:
        self._execute(lambda t: t.delete().eq("id", subject_id).eq("user_id", owner_id))
        self._after_write(owner_id)
