from __future__ import annotations

from typing import Any
import base64

import httpx
import structlog

from .errors import DataMismatch, ProbeReadError, ProbeWriteError
from .models import MemberEndpoint

PROBE_KEY = "foo"
PROBE_VALUE = "bar"

logger = structlog.get_logger(__name__)


class DataProbe:
    """Writes a fixed key to an etcd member and reads it back after restore.

    Requests go through the etcd v3 JSON gateway so no gRPC stack is needed.
    """

    def __init__(
        self,
        *,
        http_client: httpx.Client | None = None,
        timeout_seconds: float = 5.0,
        gateway_prefix: str = "/v3",
        key: str = PROBE_KEY,
        value: str = PROBE_VALUE,
    ) -> None:
        self.http_client = http_client or httpx.Client(timeout=timeout_seconds)
        self.gateway_prefix = "/" + gateway_prefix.strip("/")
        self.key = key
        self.value = value

    def seed(self, endpoint: MemberEndpoint, *, cluster_name: str | None = None) -> None:
        url = f"{endpoint.client_url}{self.gateway_prefix}/kv/put"
        payload = {"key": _encode(self.key), "value": _encode(self.value)}
        try:
            response = self.http_client.post(url, json=payload)
        except httpx.HTTPError as error:
            raise ProbeWriteError(
                phase="seed",
                cluster_name=cluster_name,
                reason=f"put {self.key}={self.value} to {endpoint.client_url} failed: {_describe(error)}",
            ) from error
        if not response.is_success:
            raise ProbeWriteError(
                phase="seed",
                cluster_name=cluster_name,
                reason=f"put {self.key}={self.value} to {endpoint.client_url} returned HTTP {response.status_code}",
            )
        logger.info("probe_seeded", cluster=cluster_name, member=endpoint.name, key=self.key)

    def verify(self, endpoint: MemberEndpoint, *, cluster_name: str | None = None) -> None:
        url = f"{endpoint.client_url}{self.gateway_prefix}/kv/range"
        try:
            response = self.http_client.post(url, json={"key": _encode(self.key)})
        except httpx.HTTPError as error:
            raise ProbeReadError(
                phase="verify",
                cluster_name=cluster_name,
                reason=f"get {self.key} from {endpoint.client_url} failed: {_describe(error)}",
            ) from error
        if not response.is_success:
            raise ProbeReadError(
                phase="verify",
                cluster_name=cluster_name,
                reason=f"get {self.key} from {endpoint.client_url} returned HTTP {response.status_code}",
            )

        try:
            raw = _first_raw_value(response.json())
        except ValueError as error:
            raise ProbeReadError(
                phase="verify",
                cluster_name=cluster_name,
                reason=f"get {self.key} from {endpoint.client_url} returned an unreadable body: {error}",
            ) from error

        observed: str | None = None
        if raw is not None:
            try:
                observed = base64.b64decode(raw, validate=True).decode("utf-8")
            except (TypeError, ValueError) as error:
                # Undecodable bytes are a mismatch, not a read failure.
                raise DataMismatch(
                    phase="verify",
                    cluster_name=cluster_name,
                    expected=self.value,
                    observed=f"undecodable value {raw!r}",
                ) from error
        if observed != self.value:
            raise DataMismatch(
                phase="verify",
                cluster_name=cluster_name,
                expected=self.value,
                observed=observed,
            )
        logger.info("probe_verified", cluster=cluster_name, member=endpoint.name, key=self.key)

    def close(self) -> None:
        self.http_client.close()


def _encode(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def _first_raw_value(body: Any) -> Any:
    if not isinstance(body, dict):
        raise ValueError("range response is not a JSON object")
    kvs = body.get("kvs") or []
    if not isinstance(kvs, list):
        raise ValueError("range response field 'kvs' is not a list")
    if not kvs:
        return None
    if not isinstance(kvs[0], dict):
        raise ValueError("range response holds a malformed key-value entry")
    return kvs[0].get("value")


def _describe(error: httpx.HTTPError) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
