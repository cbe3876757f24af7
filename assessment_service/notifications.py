import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Optional

import httpx

from .models import Assignment
from .schemas import ScoreBreakdownOut
from .scoring import ScoreBreakdown

logger = logging.getLogger("assessment-service.notifications")


class CompletionNotifier:
    """
    Tells the recommendation service that an assignment's score changed
    (first submission, or a re-grade). Best effort: failures are logged,
    never raised.

    Request handlers use `dispatch`, which posts from a worker thread so the
    respondent's response never waits on the downstream service.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
        max_workers: int = 2,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notifier")

    def build_payload(self, assignment: Assignment, breakdown: ScoreBreakdown, reason: str) -> dict[str, Any]:
        return {
            "assignment_id": assignment.id,
            "user_id": assignment.user_id,
            "test_id": assignment.test_id,
            "reason": reason,
            "breakdown": ScoreBreakdownOut.from_breakdown(breakdown).model_dump(),
        }

    def _url(self, assignment_id: int) -> str:
        return f"{self.base_url}/analysis/assignments/{assignment_id}"

    def notify(self, assignment: Assignment, breakdown: ScoreBreakdown, *, reason: str) -> bool:
        payload = self.build_payload(assignment, breakdown, reason)
        return self._post(self._url(assignment.id), payload)

    def dispatch(self, assignment: Assignment, breakdown: ScoreBreakdown, *, reason: str) -> Future:
        # payload is built now, while the ORM row is still loaded
        payload = self.build_payload(assignment, breakdown, reason)
        return self._executor.submit(self._post, self._url(assignment.id), payload)

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def _post(self, url: str, payload: dict[str, Any]) -> bool:
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                r = client.post(url, json=payload)
        except httpx.TimeoutException:
            logger.error("Timeout notifying recommendation service: %s", url)
            return False
        except httpx.RequestError as e:
            logger.error("Error notifying recommendation service: %s (%s)", url, e)
            return False

        if r.status_code >= 400:
            logger.warning(
                "Recommendation service rejected %s for assignment %s: %s",
                payload["reason"], payload["assignment_id"], r.status_code,
            )
            return False
        return True
