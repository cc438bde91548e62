# tracker.py
import queue
from typing import Callable, List, Optional, Sequence, Tuple

import structlog

from auth_rest import Identity
from models import Progress, Subject, Topic, now_iso, progress
from supabase_client import ConflictError, StoreError

log = structlog.get_logger()

LOAD_FAILED = "Failed to load subjects"
ADD_SUBJECT_FAILED = "Failed to add subject"
DELETE_SUBJECT_FAILED = "Failed to delete subject"
ADD_TOPIC_FAILED = "Failed to add topic"
UPDATE_TOPIC_FAILED = "Failed to update topic"
DELETE_TOPIC_FAILED = "Failed to delete topic"
CONFLICT = "This subject was changed elsewhere. Please try again"

_PUSH = "push"
_FEED_ERROR = "feed_error"


class StudyDashboard:
    """
    Local view of one user's subjects.

    The snapshot is only ever replaced by feed pushes. Feed callbacks may fire
    on another thread, so they just queue events; process_events() applies
    them one at a time on the caller's thread. Every mutation drains the queue
    first so it computes its write from the latest snapshot, issues a single
    store write, and leaves the snapshot alone: the next push is the truth.
    """

    def __init__(self, identity: Identity, store):
        self.identity = identity
        self.store = store
        self.loading = True
        self.snapshot: Tuple[Subject, ...] = ()
        self.error: Optional[str] = None
        self._events: "queue.Queue[tuple]" = queue.Queue()
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._closed = False

    # ---------- Feed lifecycle ----------
    def start(self) -> None:
        if self._closed or self._unsubscribe is not None:
            return
        try:
            self._unsubscribe = self.store.subscribe_to_subjects(
                self.identity.id, self._on_push, self._on_feed_error
            )
        except StoreError as e:
            self._on_feed_error(e)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._release_feed()

    def reload(self) -> None:
        """Re-open the feed after a load failure."""
        if self._closed:
            return
        self._release_feed()
        self.error = None
        self.loading = True
        self.start()

    def _release_feed(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    @property
    def closed(self) -> bool:
        return self._closed

    def _on_push(self, subjects: Sequence[Subject]) -> None:
        self._events.put((_PUSH, tuple(subjects)))

    def _on_feed_error(self, exc: Exception) -> None:
        self._events.put((_FEED_ERROR, exc))

    def process_events(self) -> int:
        handled = 0
        while True:
            try:
                kind, payload = self._events.get_nowait()
            except queue.Empty:
                return handled
            if kind == _PUSH:
                self.snapshot = payload
            else:
                log.warning("dashboard.load_failed", user_id=self.identity.id, error=str(payload))
                self.error = LOAD_FAILED
            self.loading = False
            handled += 1

    # ---------- Helpers ----------
    def dismiss_error(self) -> None:
        self.error = None

    def find_subject(self, subject_id: str) -> Optional[Subject]:
        return next((s for s in self.snapshot if s.id == subject_id), None)

    @staticmethod
    def progress(subject: Subject) -> Progress:
        return progress(subject.topics)

    def _fail(self, event: str, message: str, exc: Exception) -> None:
        log.warning(event, user_id=self.identity.id, error=str(exc))
        self.error = message

    def _topic_index(self, subject: Subject, index: int, topic_id: Optional[str]) -> Optional[int]:
        topics = subject.topics
        in_range = isinstance(index, int) and not isinstance(index, bool) and 0 <= index < len(topics)
        if topic_id is None:
            return index if in_range else None
        if in_range and topics[index].id == topic_id:
            return index
        # the snapshot moved under a stale index; follow the topic by id
        for i, t in enumerate(topics):
            if t.id == topic_id:
                return i
        return None

    def _replace_topics(self, subject: Subject, topics: List[Topic], event: str, message: str) -> bool:
        try:
            self.store.replace_topics(self.identity.id, subject.id, topics, expected_version=subject.version)
        except ConflictError as e:
            self._fail(event, CONFLICT, e)
            return False
        except StoreError as e:
            self._fail(event, message, e)
            return False
        return True

    # ---------- Mutations ----------
    def add_subject(self, name: str) -> bool:
        name = (name or "").strip()
        if not name:
            return False
        self.process_events()
        doc = {"name": name, "topics": [], "createdAt": now_iso()}
        try:
            self.store.create_subject(self.identity.id, doc)
        except StoreError as e:
            self._fail("dashboard.add_subject_failed", ADD_SUBJECT_FAILED, e)
            return False
        return True

    def delete_subject(self, subject_id: str, confirmed: bool = False) -> bool:
        """Delete a subject and all of its topics. Does nothing unless confirmed."""
        if not confirmed:
            return False
        self.process_events()
        if self.find_subject(subject_id) is None:
            return False
        try:
            self.store.delete_subject(self.identity.id, subject_id)
        except StoreError as e:
            self._fail("dashboard.delete_subject_failed", DELETE_SUBJECT_FAILED, e)
            return False
        return True

    def add_topic(self, subject_id: str, text: str) -> bool:
        text = (text or "").strip()
        if not text:
            return False
        self.process_events()
        subject = self.find_subject(subject_id)
        if subject is None:
            return False
        topics = list(subject.topics) + [Topic(name=text, done=False)]
        return self._replace_topics(subject, topics, "dashboard.add_topic_failed", ADD_TOPIC_FAILED)

    def toggle_topic(self, subject_id: str, index: int, topic_id: Optional[str] = None) -> bool:
        self.process_events()
        subject = self.find_subject(subject_id)
        if subject is None:
            return False
        i = self._topic_index(subject, index, topic_id)
        if i is None:
            log.debug("dashboard.topic_index_out_of_range", subject_id=subject_id, index=index)
            return False
        topics = list(subject.topics)
        topics[i] = topics[i].toggled()
        return self._replace_topics(subject, topics, "dashboard.update_topic_failed", UPDATE_TOPIC_FAILED)

    def delete_topic(self, subject_id: str, index: int, topic_id: Optional[str] = None) -> bool:
        self.process_events()
        subject = self.find_subject(subject_id)
        if subject is None:
            return False
        i = self._topic_index(subject, index, topic_id)
        if i is None:
            log.debug("dashboard.topic_index_out_of_range", subject_id=subject_id, index=index)
            return False
        topics = list(subject.topics[:i]) + list(subject.topics[i + 1:])
        return self._replace_topics(subject, topics, "dashboard.delete_topic_failed", DELETE_TOPIC_FAILED)
