"""Flask application: REST routes over the certificate workflow."""

import json
import logging
from dataclasses import dataclass
from typing import Optional

import click
from flask import Blueprint, Flask, current_app, g, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge

from .auth import TokenVerifier, require_auth, require_issuer
from .config import Settings
from .errors import AnchorFailedError, CertAnchorError, ValidationError
from .ledger import Web3Ledger
from .storage import S3ObjectStore
from .users import CognitoDirectory, IdentityProvider
from .workflow import CertificateService

logger = logging.getLogger(__name__)

api = Blueprint("api", __name__, url_prefix="/api")


@dataclass
class Services:
    settings: Settings
    service: CertificateService
    verifier: TokenVerifier
    directory: IdentityProvider


def _services() -> Services:
    return current_app.extensions["certanchor"]


def _uploaded_file():
    file = request.files.get("certificate")
    if file is None or not file.filename:
        raise ValidationError("No certificate file provided")
    return file


def _json_body() -> dict:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _text(body: dict, name: str) -> Optional[str]:
    value = body.get(name)
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    return value


def _verification_json(result) -> dict:
    return {
        "success": True,
        "hash": result.digest,
        "isAuthentic": result.is_authentic,
        "verified": result.is_authentic,
    }


# --- Certificates ---

@api.route("/upload", methods=["POST"])
@require_auth
def upload():
    service = _services().service
    service.require_issuer(g.principal)
    file = _uploaded_file()
    result = service.upload(g.principal, file.filename, file.mimetype, file.read())
    return jsonify({
        "success": True,
        "hash": result.digest,
        "s3Key": result.storage_key,
        "txHash": result.transaction_id,
        "status": result.status.value,
        "alreadyAnchored": result.already_anchored,
    })


@api.route("/verify", methods=["POST"])
def verify():
    file = _uploaded_file()
    result = _services().service.verify(file.read())
    return jsonify({"success": True, "hash": result.digest, "isAuthentic": result.is_authentic})


@api.route("/verify/file", methods=["POST"])
@require_auth
def verify_file():
    file = _uploaded_file()
    return jsonify(_verification_json(_services().service.verify(file.read())))


@api.route("/verify/hash", methods=["POST"])
@require_auth
def verify_hash():
    text = _text(_json_body(), "hash")
    if not text:
        raise ValidationError("hash is required")
    return jsonify(_verification_json(_services().service.verify_digest(text)))


@api.route("/certificates/my-uploads", methods=["GET"])
@require_auth
def my_uploads():
    records = _services().service.list_uploads(g.principal)
    return jsonify({"certificates": [record.to_json() for record in records]})


# --- Admin ---

@api.route("/admin/users", methods=["GET"])
@require_issuer
def list_users():
    return jsonify({"users": _services().directory.list_users()})


@api.route("/admin/create-user", methods=["POST"])
@require_issuer
def create_user():
    body = _json_body()
    services = _services()
    issuer = _text(body, "group") == services.settings.issuer_group or body.get("isIssuer") is True
    services.directory.create_user(
        _text(body, "email"),
        _text(body, "password"),
        name=_text(body, "name"),
        issuer=issuer,
    )
    return jsonify({"message": "User created successfully"})


@api.route("/admin/change-group", methods=["POST"])
@require_issuer
def change_group():
    body = _json_body()
    changed = _services().directory.change_group(_text(body, "username"), _text(body, "group"))
    if not changed:
        return jsonify({"message": "User is already in the specified group"})
    return jsonify({"message": "User group updated successfully"})


@api.route("/admin/users/<path:email>/toggle-issuer", methods=["PUT"])
@require_issuer
def toggle_issuer(email):
    body = _json_body()
    if not isinstance(body.get("isIssuer"), bool):
        raise ValidationError("Email and isIssuer status are required")
    _services().directory.set_issuer(email, body["isIssuer"])
    return jsonify({"message": "User issuer status updated successfully"})


@api.route("/admin/stats", methods=["GET"])
@require_issuer
def stats():
    services = _services()
    try:
        user_count = services.directory.count_users()
    except CertAnchorError as e:
        logger.error("Error getting users count: %s", e)
        user_count = 0
    return jsonify(services.service.stats(user_count))


@api.route("/admin/reconcile", methods=["POST"])
@require_issuer
def reconcile():
    report = _services().service.reconcile(_text(_json_body(), "ownerId"))
    return jsonify(report.to_json())


@api.route("/health", methods=["GET"])
def health():
    return jsonify({"status": "ok"})


# --- Error handling ---

def _handle_error(error: CertAnchorError):
    body = {"success": False, "message": str(error)}
    if isinstance(error, AnchorFailedError):
        body.update(hash=error.digest, s3Key=error.storage_key, status="failed")
    if error.status_code >= 500:
        logger.error("%s: %s", type(error).__name__, error)
    return jsonify(body), error.status_code


def _handle_too_large(error: RequestEntityTooLarge):
    return jsonify({"success": False, "message": "Certificate file is too large"}), 413


def _handle_http(error: HTTPException):
    return jsonify({"success": False, "message": error.description}), error.code


# --- Factory ---

def create_app(
    settings: Optional[Settings] = None,
    *,
    service: Optional[CertificateService] = None,
    verifier: Optional[TokenVerifier] = None,
    directory: Optional[IdentityProvider] = None,
) -> Flask:
    """Build the Flask application.

    Collaborators not passed in are built from ``settings``; every one of
    them is constructed here, before the first request, so no handler
    depends on background initialisation.
    """
    settings = settings or Settings.from_env()
    if service is None:
        service = CertificateService(
            S3ObjectStore.from_settings(settings),
            Web3Ledger.from_settings(settings),
        )

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = settings.max_upload_bytes
    app.extensions["certanchor"] = Services(
        settings=settings,
        service=service,
        verifier=verifier or TokenVerifier.from_settings(settings),
        directory=directory or CognitoDirectory.from_settings(settings),
    )

    origins = settings.cors_origins
    CORS(app, resources={r"/api/*": {"origins": origins if origins == "*" else origins.split(",")}})

    app.register_blueprint(api)
    app.register_error_handler(CertAnchorError, _handle_error)
    app.register_error_handler(RequestEntityTooLarge, _handle_too_large)
    app.register_error_handler(HTTPException, _handle_http)

    @app.cli.command("reconcile")
    @click.option("--owner", default=None, help="Only reconcile this owner's certificates.")
    def reconcile_command(owner):
        """Anchor stored certificates whose anchoring never completed."""
        report = app.extensions["certanchor"].service.reconcile(owner)
        click.echo(json.dumps(report.to_json()))

    return app
