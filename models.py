from typing import Any, Literal
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    model_validator,
)
from enum import StrEnum

from exc import ResolutionError


class ApiVersion(StrEnum):
    V1 = "admission.k8s.io/v1"


class Operation(StrEnum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CONNECT = "CONNECT"


# The closed set of object kinds this webhook knows how to judge.
class GovernedKind(StrEnum):
    POD = "Pod"


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.30/#status-v1-meta
class AdmissionReviewStatus(BaseModel):
    message: str | None = None
    reason: str | None = None


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionResponse
class AdmissionResponse(BaseModel):
    uid: str = ""
    allowed: bool = False
    status: AdmissionReviewStatus | None = None


class GroupVersionKind(BaseModel):
    group: str = ""
    version: str = ""
    kind: str


class UserInfo(BaseModel):
    username: str | None = None
    uid: str | None = None
    groups: list[str] = []


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionRequest
class AdmissionRequest(BaseModel):
    uid: str
    kind: GroupVersionKind
    namespace: str | None = None
    name: str | None = None
    operation: Operation = Operation.CREATE
    userInfo: UserInfo = UserInfo()
    object: dict[str, Any] | None = None
    oldObject: dict[str, Any] | None = None
    dryRun: bool = False

    @property
    def target(self) -> dict[str, Any] | None:
        """The object under review. DELETE requests only carry oldObject."""
        if self.object is not None:
            return self.object
        return self.oldObject


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionReview
class AdmissionReview(BaseModel):
    apiVersion: Literal[ApiVersion.V1] = ApiVersion.V1
    kind: Literal["AdmissionReview"] = "AdmissionReview"
    request: AdmissionRequest | None = None
    response: AdmissionResponse | None = None


class Metadata(BaseModel):
    name: str | None = None
    namespace: str | None = None
    labels: dict[str, str] = {}


class Pod(BaseModel):
    metadata: Metadata


# https://etcd.io/docs/v3.5/dev-guide/api_reference_v3/#message-member-etcdserveretcdserverpbrpcproto
# The JSON gateway encodes uint64 fields as strings; pydantic coerces them.
class ClusterMember(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int = Field(alias="ID")
    name: str = ""


class StatusResponse(BaseModel):
    leader: int = 0


class MemberListResponse(BaseModel):
    members: list[ClusterMember] = []


class ClusterSnapshot(BaseModel):
    leader_id: int
    members: list[ClusterMember]

    @property
    def size(self) -> int:
        return len(self.members)

    def resolve(self, name: str) -> ClusterMember:
        for member in self.members:
            if member.name == name:
                return member

        raise ResolutionError(f"no member named {name}")


class Verdict(BaseModel):
    allowed: bool = False
    reason: str | None = None
    message: str | None = None

    @classmethod
    def allow(cls, reason: str) -> "Verdict":
        return cls(allowed=True, reason=reason)

    @classmethod
    def deny(cls, reason: str | None = None, message: str | None = None) -> "Verdict":
        return cls(allowed=False, reason=reason, message=message)

    @model_validator(mode="after")
    def validate_model(self):
        if self.allowed and not self.reason:
            raise ValueError("an allowed verdict must carry a reason")

        return self

    def to_response(self) -> AdmissionResponse:
        # The API server only shows status.message to the client, so a
        # verdict without a message falls back to its reason.
        status = None
        if self.reason or self.message:
            status = AdmissionReviewStatus(
                message=self.message or self.reason, reason=self.reason
            )

        return AdmissionResponse(allowed=self.allowed, status=status)
