from __future__ import annotations

import logging
import queue
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from xlsa_web.domain.outcome import AppError, Err, Outcome

logger = logging.getLogger(__name__)

QUEUED = "queued"
PROGRESS = "progress"
COMPLETED = "completed"
ERROR = "error"


def make_event(event_type: str, task_id: str, **payload) -> dict:
    return {"id": uuid4().hex, "type": event_type, "task_id": task_id, **payload}


class QueueNotificationChannel:
    """
    Per-topic bounded mailboxes (queue.Queue). A full mailbox drops its oldest
    event. Delivery is at-least-once, so consumers de-duplicate by event id.

    Events published to a topic nobody has subscribed to yet go to the topic's
    default mailbox, which drain() reads. A topic without subscribers is
    dropped once drained empty, and the least recently used such topic is
    dropped when more than `max_topics` exist.
    """

    def __init__(self, mailbox_size: int = 100, max_topics: int = 1000):
        self.mailbox_size = max(int(mailbox_size), 1)
        self.max_topics = max(int(max_topics), 1)
        self._lock = threading.Lock()
        self._mailboxes: "OrderedDict[str, List[queue.Queue]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._mailboxes)

    def _topic(self, topic: str) -> List[queue.Queue]:
        # caller holds the lock
        boxes = self._mailboxes.get(topic)
        if boxes is None:
            boxes = self._mailboxes[topic] = [queue.Queue(maxsize=self.mailbox_size)]
            self._evict_idle_topics(keep=topic)
        self._mailboxes.move_to_end(topic)
        return boxes

    def _evict_idle_topics(self, keep: str) -> None:
        overflow = len(self._mailboxes) - self.max_topics
        idle = [t for t, boxes in self._mailboxes.items() if len(boxes) == 1 and t != keep]
        for name in idle[:max(overflow, 0)]:
            del self._mailboxes[name]
            logger.debug("Dropped idle topic %s", name)

    def subscribe(self, topic: str) -> queue.Queue:
        box = queue.Queue(maxsize=self.mailbox_size)
        with self._lock:
            self._topic(topic).append(box)
        return box

    def publish(self, topic: str, event: dict) -> None:
        with self._lock:
            for box in self._topic(topic):
                self._offer(box, event)

    @staticmethod
    def _offer(box: queue.Queue, event: dict) -> None:
        while True:
            try:
                box.put_nowait(event)
                return
            except queue.Full:
                try:
                    dropped = box.get_nowait()
                    logger.debug("Mailbox full; dropped event %s", dropped.get("id"))
                except queue.Empty:
                    pass

    def drain(self, topic: str, limit: Optional[int] = None) -> list:
        with self._lock:
            boxes = self._mailboxes.get(topic)
            if boxes is None:
                return []
            box = boxes[0]
            events = []
            while limit is None or len(events) < limit:
                try:
                    events.append(box.get_nowait())
                except queue.Empty:
                    break
            if len(boxes) == 1 and box.empty():
                del self._mailboxes[topic]
        return events


@dataclass
class TaskHandle:
    task_id: str
    topic: str
    future: Future
    cancel_token: threading.Event

    def cancel(self) -> None:
        self.cancel_token.set()
        self.future.cancel()

    @property
    def state(self) -> str:
        if self.future.cancelled():
            return "cancelled"
        if not self.future.done():
            return "running" if self.future.running() else QUEUED
        outcome = self.future.result()
        if outcome.is_ok():
            return COMPLETED
        return "cancelled" if outcome.error.details.get("cancelled") else "failed"


class TaskRunner:
    """
    Runs orchestrator calls on a thread pool.

    submit() publishes `queued` and returns at once; the worker publishes
    `progress`, then `completed` or `error`.

    Finished tasks stay queryable for `retention_seconds`; beyond
    `max_retained` finished tasks the oldest are forgotten first.
    """

    def __init__(
        self,
        channel: QueueNotificationChannel,
        max_workers: int = 4,
        retention_seconds: float = 3600.0,
        max_retained: int = 1000,
    ):
        self.channel = channel
        self.retention_seconds = retention_seconds
        self.max_retained = max(int(max_retained), 0)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="xlsa-task")
        self._lock = threading.Lock()
        self._tasks: Dict[str, TaskHandle] = {}
        self._finished_at: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    def submit(self, topic: str, fn: Callable[[threading.Event], Outcome]) -> TaskHandle:
        self._evict_finished()
        task_id = uuid4().hex
        token = threading.Event()
        self.channel.publish(topic, make_event(QUEUED, task_id))

        future = self._executor.submit(self._run, task_id, topic, fn, token)
        handle = TaskHandle(task_id=task_id, topic=topic, future=future, cancel_token=token)
        with self._lock:
            self._tasks[task_id] = handle
        return handle

    def _run(self, task_id: str, topic: str, fn, token: threading.Event) -> Outcome:
        self.channel.publish(topic, make_event(PROGRESS, task_id, stage="started"))
        try:
            outcome = fn(token)
        except Exception:
            logger.exception("Background task %s failed", task_id)
            outcome = Err(AppError.execution())

        if outcome.is_ok():
            self.channel.publish(topic, make_event(COMPLETED, task_id, result=outcome.value))
        else:
            self.channel.publish(topic, make_event(ERROR, task_id, error=outcome.error.to_dict()))
        with self._lock:
            self._finished_at[task_id] = time.monotonic()
        return outcome

    def _evict_finished(self) -> None:
        now = time.monotonic()
        cutoff = now - self.retention_seconds
        with self._lock:
            # tasks cancelled before they started never reach _run
            for task_id, handle in self._tasks.items():
                if handle.future.cancelled():
                    self._finished_at.setdefault(task_id, now)

            finished = sorted(self._finished_at.items(), key=lambda item: item[1])
            overflow = len(finished) - self.max_retained
            for index, (task_id, finished_at) in enumerate(finished):
                if finished_at >= cutoff and index >= overflow:
                    break
                self._finished_at.pop(task_id, None)
                self._tasks.pop(task_id, None)

    def get(self, task_id: str) -> Optional[TaskHandle]:
        with self._lock:
            return self._tasks.get(task_id)

    def status(self, task_id: str) -> Optional[dict]:
        handle = self.get(task_id)
        if handle is None:
            return None

        out = {"task_id": task_id, "topic": handle.topic, "state": handle.state}
        if handle.future.done() and not handle.future.cancelled():
            outcome = handle.future.result()
            if outcome.is_ok():
                out["result"] = outcome.value
            else:
                out["error"] = outcome.error.to_dict()
        return out

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
