import functools
import logging
import re

import pydantic
from pydantic_core import PydanticSerializationError

from flask import Flask, request, jsonify, current_app

from models import (
    BaseModel,
    AdmissionRequest,
    AdmissionReview,
    Verdict,
)

from decision import REASONS, build_schemas, decide
from providers import EtcdProvider
from exc import ApplicationError, ProtocolError

LOG = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)


class DEFAULTS:
    ENDPOINTS = "http://etcd:2379"
    POD_PREFIX = "etcd"
    DIAL_TIMEOUT = 5
    VALIDATE_PATH = "/validate"
    CA_FILE = None
    CERT_FILE = None
    KEY_FILE = None
    PROVIDER = EtcdProvider


def jsonresponse():
    """Transforms the response from a view function into a JSON object.

    Views may still return a plain Flask response tuple, which is passed
    through untouched.
    """

    def _outer(func):
        @functools.wraps(func)
        def _inner(*args, **kwargs):
            res = func(*args, **kwargs)
            if not isinstance(res, BaseModel):
                return res

            try:
                data = res.model_dump(mode="json", exclude_none=True)
            except (PydanticSerializationError, ValueError, TypeError) as err:
                LOG.error("Can't encode response: %s (raw response: %r)", err, res)
                raise ApplicationError(f"could not encode response: {err}")

            return jsonify(data)

        return _inner

    return _outer


def parse_timeout(val: str | None) -> float | None:
    """Parse the Go duration the API server appends as ?timeout=10s."""
    if not val:
        return None

    match = re.fullmatch(r"(\d+(?:\.\d+)?)(ms|s|m)", val)
    if not match:
        LOG.warning("ignoring malformed timeout %r", val)
        return None

    scale = {"ms": 0.001, "s": 1, "m": 60}[match.group(2)]
    return float(match.group(1)) * scale


def log_request(req: AdmissionRequest):
    LOG.info(
        "AdmissionReview for Kind=%s, Namespace=%s Name=%s UID=%s Operation=%s UserInfo=%s",
        req.kind.kind,
        req.namespace,
        req.name,
        req.uid,
        req.operation,
        req.userInfo.model_dump(exclude_none=True),
    )


def decode_review(body: bytes) -> AdmissionReview:
    review = AdmissionReview.model_validate_json(body)
    if review.request is None:
        raise ProtocolError("admission review does not contain a request")

    return review


@jsonresponse()
def serve(path=None):
    body = request.get_data()
    if not body:
        LOG.error("empty body")
        return "empty body", 400, {"content-type": "text/plain"}

    if request.mimetype != "application/json":
        LOG.error("Content-Type=%s, expect application/json", request.content_type)
        return (
            "invalid Content-Type, expect `application/json`",
            415,
            {"content-type": "text/plain"},
        )

    try:
        review = decode_review(body)
    except (pydantic.ValidationError, ProtocolError) as err:
        LOG.error("Can't decode body: %s", err)
        return AdmissionReview(response=Verdict.deny(message=str(err)).to_response())

    req = review.request
    log_request(req)

    if request.path != current_app.config["VALIDATE_PATH"]:
        LOG.info("no admission handler for %s", request.path)
        return AdmissionReview()

    try:
        verdict = decide(
            req,
            current_app.provider,
            current_app.config["POD_PREFIX"],
            current_app.schemas,
            timeout=parse_timeout(request.args.get("timeout")),
        )
    except Exception as err:
        LOG.exception("decision for %s failed", req.uid)
        verdict = Verdict.deny(REASONS.INTERNAL, f"internal error: {err}")

    response = verdict.to_response()
    response.uid = req.uid

    return AdmissionReview(response=response)


def handle_applicationerror(err):
    return str(err), 500, {"content-type": "text/plain"}


def health():
    return "OK", 200, {"content-type": "text/plain"}


def create_app(**config) -> Flask:
    """Use an application factory [1] to create the Flask app.

    This makes it much easier to write tests for the application, since we can
    set up the test environment before instantiating the app. This is difficult
    to do if the app is created at `import` time.

    [1]: https://flask.palletsprojects.com/en/3.0.x/patterns/appfactories/
    """

    app = Flask(__name__)
    app.config.from_object(DEFAULTS)
    app.config.from_prefixed_env("ETCD_GUARD")
    if config:
        app.config.update(config)

    endpoints = app.config.get("ENDPOINTS") or ""
    if isinstance(endpoints, str):
        endpoints = [ep.strip() for ep in endpoints.split(",") if ep.strip()]

    if not endpoints:
        LOG.error("Missing etcd endpoints configuration")
        exit(1)

    if not app.config.get("POD_PREFIX"):
        LOG.error("Missing etcd pod prefix configuration")
        exit(1)

    app.config["ENDPOINTS"] = endpoints
    app.config["POD_PREFIX"] = str(app.config["POD_PREFIX"])

    app.provider = app.config["PROVIDER"](
        endpoints,
        timeout=float(app.config["DIAL_TIMEOUT"]),
        ca_file=app.config["CA_FILE"],
        cert_file=app.config["CERT_FILE"],
        key_file=app.config["KEY_FILE"],
    )
    app.schemas = build_schemas()

    app.errorhandler(ApplicationError)(handle_applicationerror)
    app.add_url_rule("/healthz", view_func=health)
    app.add_url_rule(
        app.config["VALIDATE_PATH"],
        endpoint="validate",
        view_func=serve,
        methods=["POST"],
    )
    app.add_url_rule(
        "/",
        endpoint="noop",
        view_func=serve,
        methods=["POST"],
        defaults={"path": ""},
    )
    app.add_url_rule(
        "/<path:path>", endpoint="noop", view_func=serve, methods=["POST"]
    )

    return app
