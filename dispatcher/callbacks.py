"""
Outbound callbacks to the downstream receiver.

Every request carries the shared secret in SECRET_HEADER; a 200 response is
success, anything else (or no response at all) is a DeliveryFailure. Failed
deliveries are reported to the caller and never retried here.
"""
import json
import logging
from typing import Optional

import requests

from dispatcher.models import Job

logger = logging.getLogger("Callbacks")

SECRET_HEADER = "Scheduler-Secret"


class DeliveryFailure(Exception):
    """The callback returned a non-200 status or could not be sent."""


class JobFailed(DeliveryFailure):
    pass


class CronFailed(DeliveryFailure):
    pass


class CallbackSender:
    def __init__(
        self,
        endpoint: str,
        secret: str,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.endpoint = endpoint
        self.secret = secret
        self.timeout = timeout
        self.session = session or requests.Session()

    def _post(self, data: Optional[bytes], content_type: Optional[str], failure):
        headers = {SECRET_HEADER: self.secret}
        if content_type:
            headers["Content-Type"] = content_type
        try:
            response = self.session.post(
                self.endpoint, data=data, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as e:
            raise failure(f"request to {self.endpoint} failed: {e}") from e
        try:
            if response.status_code != 200:
                raise failure(
                    f"non-ok status code {response.status_code}: {response.reason}"
                )
        finally:
            response.close()

    def send_job(self, job: Job) -> None:
        """POST the job's raw body; an absent body is sent as an empty request."""
        if job.body is None:
            self._post(None, None, JobFailed)
        else:
            self._post(job.body, "application/json", JobFailed)

    def send_cron(self, cron_id: str) -> None:
        """POST {"cron_id": ...} for one firing of a recurring trigger."""
        payload = json.dumps({"cron_id": cron_id}).encode("utf-8")
        self._post(payload, "application/json", CronFailed)

    def close(self) -> None:
        self.session.close()
        logger.info("Closed callback session.")
