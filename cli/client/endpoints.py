"""API Endpoint Wrappers - Typed API calls"""

import time
from typing import Any

import httpx

from ..utils.config_manager import config
from .base import APIClient, OffloadError

TERMINAL_STATES = ("completed", "failed")


class OffloadClient:
    """High-level client with typed endpoint methods"""

    def __init__(
        self,
        base_url: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        api_config = config.load_config().get("api", {})
        final_base_url = base_url or api_config.get("base_url", "http://localhost:8000")

        self.api = APIClient(
            base_url=final_base_url,
            timeout=float(api_config.get("timeout", 30)),
            transport=transport,
        )

    def __enter__(self):
        self.api.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.api.__exit__(exc_type, exc_val, exc_tb)

    # Health Check
    def health_check(self) -> dict[str, Any]:
        """Check API health status"""
        return self.api.get("/healthz")

    # Jobs Endpoints
    def submit_job(
        self, limit: int | None = None, include_primes: bool = False
    ) -> dict[str, Any]:
        """Submit a prime counting job"""
        payload: dict[str, Any] = {"includePrimes": include_primes}
        if limit is not None:
            payload["limit"] = limit
        return self.api.post("/jobs", json={"payload": payload})

    def get_job(self, job_id: str) -> dict[str, Any]:
        """Get job status"""
        return self.api.get(f"/jobs/{job_id}")

    def wait_for_job(
        self,
        job_id: str,
        interval: float = 1.0,
        timeout: float = 300,
        sleep=time.sleep,
    ) -> dict[str, Any]:
        """Poll a job until it completes or fails"""
        deadline = time.monotonic() + timeout

        while True:
            job = self.get_job(job_id)
            if job.get("state") in TERMINAL_STATES:
                return job
            if time.monotonic() >= deadline:
                raise OffloadError(
                    f"Job {job_id} still {job.get('state')} after {timeout}s"
                )
            sleep(interval)
