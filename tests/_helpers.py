"""Small polling helper for tests that wait on background threads."""

import time


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll predicate until it returns truthy or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


VALID_MESH_YAML = """
ingressClass: nginx
connectTimeout: 2s
defaultConfig:
  discoveryAddress: "istiod.mesh.svc:15012"
  concurrency: 4
"""
