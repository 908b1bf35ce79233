"""Decide whether a pod deletion is safe for the etcd cluster.

Deleting the raft leader while it still has peers forces an election and,
combined with other disruptions, can cost the cluster its quorum. Deleting a
follower, or the very last member, is allowed.

The checks run in a fixed order and the first one that produces a verdict
ends the decision. Anything that cannot be established positively results
in a denial.
"""

import logging
from types import MappingProxyType
from typing import Mapping

import pydantic

from exc import ClusterUnavailableError, ResolutionError
from models import (
    AdmissionRequest,
    BaseModel,
    ClusterSnapshot,
    GovernedKind,
    Pod,
    Verdict,
)
from providers import Provider

LOG = logging.getLogger(__name__)


class REASONS:
    NOT_MEMBER_POD = "not a cluster-member pod, deletion allowed"
    QUORUM_SAFE = "deletion does not endanger quorum"
    UNGOVERNED_KIND = "object kind is not governed by this webhook"
    UNDECODABLE = "could not decode object"
    CLIENT_UNAVAILABLE = "cluster client unavailable"
    NO_LEADER = "could not determine leader"
    NO_MEMBERS = "could not list members"
    NOT_A_MEMBER = "target not a recognized cluster member"
    LEADER = "cannot delete the current leader while other members exist"
    INTERNAL = "internal error"


def build_schemas() -> Mapping[str, type[BaseModel]]:
    """Return the read-only registry of object schemas, keyed by kind."""
    return MappingProxyType({GovernedKind.POD.value: Pod})


def is_removable(member_id: int, snapshot: ClusterSnapshot) -> bool:
    return member_id != snapshot.leader_id or snapshot.size == 1


def audit(name, verdict, leader_id=None, member_id=None, members=None):
    LOG.info(
        "pod=%s leader=%s member=%s members=%s allowed=%s reason=%s",
        name,
        leader_id,
        member_id,
        [(m.id, m.name) for m in members] if members is not None else None,
        verdict.allowed,
        verdict.reason,
    )
    return verdict


def decide_member_pod(
    provider: Provider, name: str, timeout: float | None = None
) -> Verdict:
    try:
        conn = provider.connect(timeout=timeout)
    except ClusterUnavailableError as err:
        LOG.error("etcd client unavailable: %s", err)
        return audit(name, Verdict.deny(REASONS.CLIENT_UNAVAILABLE, str(err)))

    with conn:
        try:
            leader_id = conn.current_leader()
        except ClusterUnavailableError as err:
            LOG.warning("could not determine etcd leader: %s", err)
            return audit(name, Verdict.deny(REASONS.NO_LEADER, str(err)))

        try:
            members = conn.list_members()
        except ClusterUnavailableError as err:
            LOG.warning("could not list etcd members: %s", err)
            verdict = Verdict.deny(REASONS.NO_MEMBERS, str(err))
            return audit(name, verdict, leader_id=leader_id)

    snapshot = ClusterSnapshot(leader_id=leader_id, members=members)

    try:
        member = snapshot.resolve(name)
    except ResolutionError as err:
        LOG.warning("pod %s not found among etcd members: %s", name, err)
        verdict = Verdict.deny(REASONS.NOT_A_MEMBER, f"{name} is not an etcd member")
        return audit(name, verdict, leader_id=leader_id, members=members)

    if is_removable(member.id, snapshot):
        verdict = Verdict.allow(REASONS.QUORUM_SAFE)
    else:
        peers = snapshot.size - 1
        verdict = Verdict.deny(
            REASONS.LEADER, f"{name} is the etcd leader and has {peers} peers"
        )

    return audit(
        name, verdict, leader_id=leader_id, member_id=member.id, members=members
    )


def decide(
    request: AdmissionRequest,
    provider: Provider,
    pod_prefix: str,
    schemas: Mapping[str, type[BaseModel]],
    timeout: float | None = None,
) -> Verdict:
    schema = schemas.get(request.kind.kind)
    if schema is None:
        LOG.warning("refusing ungoverned kind %s", request.kind.kind)
        return Verdict.deny(REASONS.UNGOVERNED_KIND)

    try:
        obj = schema.model_validate(request.target)
    except pydantic.ValidationError as err:
        LOG.error("could not decode %s object: %s", request.kind.kind, err)
        return Verdict.deny(REASONS.UNDECODABLE, str(err))

    LOG.debug("decoded object: %s", obj)

    match request.kind.kind:
        case GovernedKind.POD:
            name = request.name or ""
            if not name.startswith(pod_prefix):
                LOG.info("%s is not an etcd pod, allowing", name)
                return Verdict.allow(REASONS.NOT_MEMBER_POD)

            return decide_member_pod(provider, name, timeout=timeout)

    return Verdict.deny(REASONS.UNGOVERNED_KIND)
