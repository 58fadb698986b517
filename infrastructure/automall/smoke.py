"""
Post-deploy smoke check
=======================
Polls the public health endpoint until the load balancer routes to a healthy
task. The ALB only forwards to targets that pass the target-group health
check, so a 200 here means at least one task is serving.
"""
from __future__ import annotations

import time

import requests

from automall.logger import get_logger

logger = get_logger(__name__)


def wait_until_healthy(
    base_url: str,
    attempts: int = 30,
    delay_seconds: float = 10,
    path: str = "/health",
) -> bool:
    url = base_url.rstrip("/") + path
    for attempt in range(1, attempts + 1):
        try:
            resp = requests.get(url, timeout=10)
            status = resp.status_code
        except requests.RequestException as e:
            status = None
            logger.info("Health check unreachable", extra={"url": url, "attempt": attempt, "error": str(e)})
        else:
            logger.info("Health check", extra={"url": url, "attempt": attempt, "status": status})

        if status == 200:
            return True
        if attempt < attempts:
            time.sleep(delay_seconds)

    logger.warning("Service never reported healthy", extra={"url": url, "attempts": attempts})
    return False
