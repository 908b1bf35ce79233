import pytest

import webhook

from exc import ClusterUnavailableError
from models import ClusterMember


MEMBERS = [
    ClusterMember(id=1, name="etcd-1"),
    ClusterMember(id=2, name="etcd-2"),
    ClusterMember(id=3, name="etcd-3"),
]


class FakeConnection:
    def __init__(self, leader, members, fail=None):
        self.leader = leader
        self.members = members
        self.fail = fail
        self.closed = False

    def current_leader(self):
        if self.fail == "leader":
            raise ClusterUnavailableError("status request timed out")
        return self.leader

    def list_members(self):
        if self.fail == "members":
            raise ClusterUnavailableError("member list request timed out")
        return self.members

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class FakeProvider:
    def __init__(self, endpoints=None, leader=1, members=MEMBERS, fail=None, **kwargs):
        self.endpoints = endpoints
        self.leader = leader
        self.members = members
        self.fail = fail
        self.connections = []
        self.timeouts = []

    def connect(self, timeout=None):
        self.timeouts.append(timeout)
        if self.fail == "connect":
            raise ClusterUnavailableError("connection refused")

        conn = FakeConnection(self.leader, self.members, fail=self.fail)
        self.connections.append(conn)
        return conn


def make_review(name, kind="Pod", uid="1234"):
    return {
        "apiVersion": "admission.k8s.io/v1",
        "kind": "AdmissionReview",
        "request": {
            "uid": uid,
            "kind": {"group": "", "version": "v1", "kind": kind},
            "namespace": "kube-system",
            "name": name,
            "operation": "DELETE",
            "userInfo": {"username": "kubernetes-admin", "groups": ["system:masters"]},
            "object": None,
            "oldObject": {"metadata": {"name": name, "namespace": "kube-system"}},
        },
    }


@pytest.fixture()
def fake_provider():
    return FakeProvider()


@pytest.fixture()
def review():
    return make_review


@pytest.fixture()
def app():
    app = webhook.create_app(
        PROVIDER=FakeProvider,
        ENDPOINTS="http://etcd-client:2379",
        TESTING=True,
    )
    yield app


@pytest.fixture()
def client(app):
    return app.test_client()
