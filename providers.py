import logging
import ssl
from time import monotonic

import httpx
from typing_extensions import Protocol, Self, override

from exc import ClusterUnavailableError
from models import ClusterMember, MemberListResponse, StatusResponse

LOG = logging.getLogger(__name__)


def remaining(deadline: float) -> float:
    left = deadline - monotonic()
    if left <= 0:
        raise ClusterUnavailableError("deadline exceeded talking to etcd")

    return left


class ClusterConnection(Protocol):
    def current_leader(self) -> int: ...

    def list_members(self) -> list[ClusterMember]: ...

    def close(self) -> None: ...

    def __enter__(self) -> Self: ...

    def __exit__(self, *exc_info) -> None: ...


class Provider(Protocol):
    def connect(self, timeout: float | None = None) -> ClusterConnection: ...


class EtcdConnection(ClusterConnection):
    """A connection to one etcd member through the v3 JSON gateway.

    Each RPC is attempted exactly once and only gets whatever is left of the
    deadline set in connect(). Any failure is reported as
    ClusterUnavailableError; callers must not act on partial answers.
    """

    def __init__(self, client: httpx.Client, endpoint: str, deadline: float):
        self._client = client
        self.endpoint = endpoint
        self.deadline = deadline

    def _call(self, path, model):
        try:
            res = self._client.post(
                f"{self.endpoint}{path}", json={}, timeout=remaining(self.deadline)
            )
            res.raise_for_status()
            return model.model_validate(res.json())
        except httpx.HTTPError as err:
            LOG.error("request to %s%s failed: %s", self.endpoint, path, err)
            raise ClusterUnavailableError(f"{path} failed: {err}") from err
        except ValueError as err:
            LOG.error("unexpected response from %s%s: %s", self.endpoint, path, err)
            raise ClusterUnavailableError(f"{path} returned invalid data") from err

    @override
    def current_leader(self) -> int:
        status = self._call("/v3/maintenance/status", StatusResponse)
        if not status.leader:
            raise ClusterUnavailableError(f"{self.endpoint} reports no leader")

        return status.leader

    @override
    def list_members(self) -> list[ClusterMember]:
        return self._call("/v3/cluster/member/list", MemberListResponse).members

    @override
    def close(self) -> None:
        self._client.close()

    @override
    def __enter__(self) -> Self:
        return self

    @override
    def __exit__(self, *exc_info) -> None:
        self.close()


class EtcdProvider(Provider):
    def __init__(
        self,
        endpoints: list[str],
        timeout: float = 5,
        ca_file: str | None = None,
        cert_file: str | None = None,
        key_file: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        """Hold the immutable settings needed to reach the etcd cluster.

        No connection is made here; every call to connect() opens a fresh
        client that the caller is expected to close.
        """

        super().__init__()

        scheme = "https" if ca_file or cert_file else "http"
        self.endpoints = [
            (ep if "://" in ep else f"{scheme}://{ep}").rstrip("/") for ep in endpoints
        ]
        self.timeout = timeout
        self._transport = transport
        self._verify: ssl.SSLContext | bool = True

        if ca_file or cert_file:
            ctx = ssl.create_default_context(cafile=ca_file)
            if cert_file:
                ctx.load_cert_chain(cert_file, key_file)
            self._verify = ctx

    @override
    def connect(self, timeout: float | None = None) -> EtcdConnection:
        if timeout is not None:
            timeout = min(timeout, self.timeout)
        else:
            timeout = self.timeout

        # One deadline covers the endpoint probes and every RPC made on the
        # returned connection.
        deadline = monotonic() + timeout
        client = httpx.Client(
            timeout=timeout, verify=self._verify, transport=self._transport
        )

        # Use the first endpoint that answers. This is endpoint selection,
        # not a retry: a later RPC failure is still terminal.
        for endpoint in self.endpoints:
            try:
                res = client.get(f"{endpoint}/version", timeout=remaining(deadline))
                res.raise_for_status()
            except ClusterUnavailableError:
                client.close()
                raise
            except httpx.HTTPError as err:
                LOG.warning("etcd endpoint %s unavailable: %s", endpoint, err)
                continue

            LOG.debug("connected to etcd endpoint %s", endpoint)
            return EtcdConnection(client, endpoint, deadline)

        client.close()
        raise ClusterUnavailableError(
            "no etcd endpoint answered: %s" % ", ".join(self.endpoints)
        )
