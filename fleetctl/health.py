from __future__ import annotations

import httpx

from .collaborators import InstanceHandle
from .lifecycle import Verdict


def classify_response(resp: httpx.Response) -> Verdict:
    """Expected: HTTP 200 with JSON {"status": "healthy"}."""
    if resp.status_code != 200:
        return Verdict.FAIL
    try:
        data = resp.json()
    except ValueError:
        return Verdict.FAIL
    if isinstance(data, dict) and data.get("status") == "healthy":
        return Verdict.PASS
    return Verdict.FAIL


class HttpProbe:
    """Application-level liveness check against an instance's health endpoint.

    Never raises: a response that is not healthy (or a read timeout after the
    connection was made) is FAIL, anything that prevents talking to the
    instance at all (refused, DNS, connect timeout) is UNREACHABLE.
    """

    def __init__(self, health_path: str = "/health", timeout_s: float = 5.0, transport: httpx.BaseTransport | None = None):
        self.health_path = health_path
        self.timeout_s = timeout_s
        self._transport = transport

    def url_for(self, handle: InstanceHandle) -> str:
        return f"{handle.address.rstrip('/')}{self.health_path}"

    def check(self, handle: InstanceHandle) -> Verdict:
        try:
            with httpx.Client(timeout=self.timeout_s, follow_redirects=False, transport=self._transport) as client:
                resp = client.get(self.url_for(handle))
            return classify_response(resp)
        except (httpx.ConnectError, httpx.ConnectTimeout):
            return Verdict.UNREACHABLE
        except (httpx.ReadTimeout, httpx.RemoteProtocolError):
            return Verdict.FAIL
        except httpx.HTTPError:
            return Verdict.UNREACHABLE
        except Exception:
            # Bad URL, resolver failures surfacing as OSError, etc. A prober error is
            # a verdict about the instance, never a controller failure.
            return Verdict.UNREACHABLE
