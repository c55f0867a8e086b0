from __future__ import annotations

import logging
import os
import posixpath
import time
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Iterator

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHash, VerificationError
from flask import Blueprint, Flask, Response, current_app, jsonify, request, stream_with_context
from flask_wtf.csrf import CSRFError, CSRFProtect, generate_csrf
from werkzeug.exceptions import RequestEntityTooLarge

from .. import progress
from ..config import Settings
from ..deploy import NetlifyDeployTracker, baseline_deploy_id, check_build_configuration, trigger_build
from ..errors import ConfigurationError, TransportError, ValidationFailure
from ..notes.images import ImageUrlChecker
from ..notes.markdown import parse_note
from ..notes.validation import UploadedFile, decode_note, has_note_extension, prevalidate_note
from ..progress import NDJSON_MIMETYPE, ProgressEvent
from ..storage import StorageBackend, build_backends
from ..storage.sftp import SftpBackend
from ..tempstore import TempStore
from ..workflow import NotePublisher, NoteSubmission

logger = logging.getLogger(__name__)

RATE_LIMIT_WINDOW_SECONDS = 15 * 60
RATE_LIMIT_MAX_ATTEMPTS = 8
MAX_REQUEST_BYTES = 8 * 1024 * 1024
TEMP_UPLOAD_MAX_AGE_SECONDS = 24 * 60 * 60
PASSWORD_HASHER = PasswordHasher()
STREAM_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}

api = Blueprint("api", __name__, url_prefix="/api")
csrf = CSRFProtect()

# Failed API key attempts per client address, pruned lazily.
FAILED_API_KEYS_BY_IP: dict[str, deque[float]] = defaultdict(deque)


def _default_sftp_factory(settings: Settings) -> SftpBackend:
    return SftpBackend(settings.sftp, settings.environment, settings.cover_image_url or "")


@dataclass
class Services:
    settings: Settings
    temp_store: TempStore
    backend_factory: Callable[[Settings, bool], list[StorageBackend]] = build_backends
    tracker_factory: Callable[[Settings], NetlifyDeployTracker | None] = NetlifyDeployTracker.from_settings
    sftp_factory: Callable[[Settings], SftpBackend] = _default_sftp_factory
    trigger: Callable[[str | None, str | None], None] = trigger_build
    checker: ImageUrlChecker | None = None

    def image_checker(self) -> ImageUrlChecker:
        if self.checker is None:
            self.checker = ImageUrlChecker(self.settings.allowed_image_domains, self.settings.blocked_image_domains)
        return self.checker


def _services() -> Services:
    return current_app.extensions["prisma_notes"]


def _client_ip() -> str:
    return request.headers.get("X-Forwarded-For", request.remote_addr or "unknown").split(",", maxsplit=1)[0].strip()


def _prune_attempts(attempts: deque[float], now: float) -> None:
    cutoff = now - RATE_LIMIT_WINDOW_SECONDS
    while attempts and attempts[0] < cutoff:
        attempts.popleft()


def _is_rate_limited(ip_address: str, now: float) -> bool:
    attempts = FAILED_API_KEYS_BY_IP[ip_address]
    _prune_attempts(attempts, now)
    return len(attempts) >= RATE_LIMIT_MAX_ATTEMPTS


def _record_failed_attempt(ip_address: str, now: float) -> None:
    FAILED_API_KEYS_BY_IP[ip_address].append(now)


def _clear_failed_attempts(ip_address: str) -> None:
    FAILED_API_KEYS_BY_IP.pop(ip_address, None)


def _bearer_token() -> str | None:
    parts = request.headers.get("Authorization", "").split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        return None
    return parts[1]


def _api_key_is_valid(api_key: str | None, key_hashes: tuple[str, ...]) -> bool:
    if not api_key:
        return False
    for key_hash in key_hashes:
        try:
            if PASSWORD_HASHER.verify(key_hash, api_key):
                return True
        except (InvalidHash, VerificationError):
            continue
    return False


def require_api_key(view: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(view)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        ip_address = _client_ip()
        now = time.time()
        if _is_rate_limited(ip_address, now):
            return jsonify({"success": False, "error": "Too many failed attempts. Please wait and try again."}), 429
        if not _api_key_is_valid(_bearer_token(), _services().settings.api_key_hashes):
            _record_failed_attempt(ip_address, now)
            return jsonify({"success": False, "error": "Unauthorized"}), 401
        _clear_failed_attempts(ip_address)
        return view(*args, **kwargs)

    return wrapper


def _uploaded_file(field_name: str) -> UploadedFile | None:
    storage = request.files.get(field_name)
    if storage is None or not storage.filename:
        return None
    return UploadedFile(name=storage.filename, data=storage.read(), content_type=storage.mimetype or None)


def _json_errors(errors: list[str], status: int) -> tuple[Response, int]:
    return jsonify({"success": False, "errors": errors}), status


def _stream(events: Iterator[ProgressEvent]) -> Response:
    return Response(
        stream_with_context(progress.encode_stream(events)),
        mimetype=NDJSON_MIMETYPE,
        headers=STREAM_HEADERS,
    )


def _safe_directory(directory: str) -> str | None:
    directory = directory.strip().strip("/")
    if not directory:
        return ""
    parts = directory.split("/")
    if any(part in {"", ".", ".."} for part in parts):
        return None
    return posixpath.join(*parts)


@api.get("/csrf-token")
def csrf_token() -> Response:
    return jsonify({"csrfToken": generate_csrf()})


@api.post("/upload-temp")
def upload_temp() -> tuple[Response, int]:
    services = _services()
    note = _uploaded_file("file")
    if note is None:
        return _json_errors(["No file was provided"], 400)
    if not has_note_extension(note.name):
        return _json_errors(["The file must be a Markdown file (.md or .mdx)"], 400)
    text = decode_note(note.data)

    result = prevalidate_note(text, services.image_checker())
    # Kept even when invalid so the contributor can fetch it back later.
    file_id = services.temp_store.save(note.name, text)
    services.temp_store.purge(TEMP_UPLOAD_MAX_AGE_SECONDS)

    payload: dict[str, Any] = {
        "success": result.ok,
        "id": file_id,
        "frontmatter": result.frontmatter,
        "frontmatterErrors": result.frontmatter_errors,
        "imageErrors": result.image_errors,
    }
    if not result.ok:
        payload["errors"] = result.summary_errors()
    return jsonify(payload), 200 if result.ok else 400


@api.get("/upload-temp")
def temp_file_info() -> tuple[Response, int]:
    file_id = request.args.get("id", "")
    if not file_id:
        return _json_errors(["Missing file id"], 400)
    try:
        _, text = _services().temp_store.load(file_id)
    except ValueError:
        return _json_errors(["Invalid file id"], 400)
    except KeyError:
        return _json_errors(["Temporary file not found"], 404)

    try:
        frontmatter, _ = parse_note(text)
    except ValueError as exc:
        return _json_errors([str(exc)], 400)
    return jsonify({"success": True, "id": file_id, "frontmatter": frontmatter}), 200


def _bound_note(services: Services) -> UploadedFile | None:
    note = _uploaded_file("new-note")
    if note is not None:
        return note
    note_id = (request.form.get("note-id") or "").strip()
    if not note_id:
        return None
    name, text = services.temp_store.load(note_id)
    return UploadedFile(name=name, data=text.encode("utf-8"), content_type="text/markdown")


@api.post("/submit-note")
def submit_note() -> Response | tuple[Response, int]:
    services = _services()
    settings = services.settings
    settings.require_publish_targets()

    try:
        note = _bound_note(services)
    except ValueError:
        return _json_errors(["Invalid note id"], 400)
    except KeyError:
        return _json_errors(["Temporary file not found"], 404)

    draft = (request.form.get("is_draft") or "").strip().lower() == "true"
    submission = NoteSubmission(
        note=note,
        cover=_uploaded_file("cover-image"),
        contributor=request.form.get("contributor"),
        draft=draft,
    )
    publisher = NotePublisher(
        settings,
        services.backend_factory(settings, draft),
        checker=services.image_checker(),
        tracker=services.tracker_factory(settings),
        trigger=services.trigger,
    )
    note_id = (request.form.get("note-id") or "").strip()

    def events() -> Iterator[ProgressEvent]:
        completed = False
        for event in publisher.publish(submission):
            completed = completed or (event.step == progress.STEP_COMPLETE and not event.is_error)
            yield event
        if completed and note_id:
            services.temp_store.delete(note_id)

    logger.info("Note submission started (draft=%s, targets=%s)", draft, ",".join(settings.upload_modes))
    return _stream(events())


@csrf.exempt
@api.post("/upload-sftp")
@require_api_key
def upload_sftp() -> tuple[Response, int]:
    services = _services()
    settings = services.settings
    missing = settings.sftp.missing()
    if missing:
        raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}")

    note = _uploaded_file("file")
    if note is None:
        return _json_errors(["No file was provided"], 400)
    if not has_note_extension(note.name):
        return _json_errors(["The file must be a Markdown file (.md or .mdx)"], 400)
    directory = _safe_directory(request.form.get("directory") or "")
    if directory is None:
        return _json_errors(["Invalid directory"], 400)
    trigger_requested = (request.form.get("triggerBuild") or "").strip().lower() == "true"

    text = decode_note(note.data)
    result = prevalidate_note(text, services.image_checker())
    file_id = str(uuid.uuid4())
    payload: dict[str, Any] = {
        "success": result.ok,
        "id": file_id,
        "frontmatter": result.frontmatter,
        "frontmatterErrors": result.frontmatter_errors,
        "imageErrors": result.image_errors,
    }
    if not result.ok:
        payload["errors"] = result.summary_errors()
        return jsonify(payload), 400

    backend = services.sftp_factory(settings)
    try:
        extension = posixpath.splitext(note.name)[1].lower()
        payload["path"] = backend.upload_bytes(text.encode("utf-8"), f"{file_id}{extension}", directory)
    finally:
        backend.close()

    if trigger_requested:
        try:
            services.trigger(settings.netlify.build_hook, f"SFTP upload {file_id}")
        except (TransportError, ConfigurationError) as exc:
            logger.error("Build trigger after SFTP upload failed: %s", exc)
            payload["buildTriggered"] = False
            payload["buildMessage"] = str(exc)
        else:
            payload["buildTriggered"] = True
            payload["buildMessage"] = "Netlify build triggered"
    return jsonify(payload), 200


@api.get("/upload-sftp")
@require_api_key
def sftp_status() -> tuple[Response, int]:
    services = _services()
    settings = services.settings
    backend = services.sftp_factory(settings)
    details = {"environment": settings.environment, "basePath": settings.sftp.base_path}
    try:
        details = backend.check_connection()
    except (TransportError, ConfigurationError) as exc:
        return jsonify({"success": False, "message": f"Unable to connect to the SFTP server: {exc}", **details}), 500
    finally:
        backend.close()
    return jsonify({"success": True, "message": "SFTP connection established", **details}), 200


@csrf.exempt
@api.post("/build-trigger")
@require_api_key
def build_trigger() -> Response:
    services = _services()
    settings = services.settings
    tracker = services.tracker_factory(settings)
    title = request.form.get("title") or "Test deploy from the administration API"

    def events() -> Iterator[ProgressEvent]:
        step = progress.STEP_BUILD
        yield progress.info(step, "Starting the Netlify build test...")
        try:
            previous_deploy_id = baseline_deploy_id(tracker)
            triggered_at = datetime.now(timezone.utc)
            services.trigger(settings.netlify.build_hook, title)
            yield progress.success(step, "Build triggered")
            deploy_url = None
            if tracker is not None:
                for update in tracker.watch(triggered_at, previous_deploy_id):
                    if update.is_ready:
                        deploy_url = update.url
                    else:
                        yield progress.info(step, update.message)
            yield progress.success(progress.STEP_COMPLETE, "Build finished", url=deploy_url)
        except (TransportError, ConfigurationError) as exc:
            logger.error("Build test failed: %s", exc)
            yield progress.error(step, f"Build test failed: {exc}")

    return _stream(events())


@api.get("/build-trigger")
@require_api_key
def build_configuration() -> Response:
    services = _services()
    report = check_build_configuration(services.settings, services.tracker_factory(services.settings))
    return jsonify({"message": "Build trigger configuration check", **report})


@api.errorhandler(ValidationFailure)
def handle_validation_failure(exc: ValidationFailure) -> tuple[Response, int]:
    return jsonify(
        {
            "success": False,
            "errors": [str(error) for error in exc.errors],
            "fields": [{"field": error.field, "message": error.message} for error in exc.errors],
        }
    ), 400


@api.errorhandler(ConfigurationError)
def handle_configuration_error(exc: ConfigurationError) -> tuple[Response, int]:
    logger.error("Configuration error: %s", exc)
    return _json_errors([str(exc)], 500)


@api.errorhandler(TransportError)
def handle_transport_error(exc: TransportError) -> tuple[Response, int]:
    logger.error("Upstream service failed: %s", exc)
    return _json_errors([str(exc)], 502)


def create_app(
    settings: Settings | None = None,
    services: Services | None = None,
    config_overrides: dict[str, Any] | None = None,
) -> Flask:
    settings = settings or (services.settings if services else Settings.from_env())
    app = Flask(__name__)
    app.config["SECRET_KEY"] = settings.require_session_secret()
    app.config["MAX_CONTENT_LENGTH"] = MAX_REQUEST_BYTES
    app.config["SESSION_COOKIE_HTTPONLY"] = True
    app.config["SESSION_COOKIE_SECURE"] = settings.session_cookie_secure
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
    if config_overrides:
        app.config.update(config_overrides)

    app.extensions["prisma_notes"] = services or Services(
        settings=settings, temp_store=TempStore(settings.temp_upload_dir)
    )
    csrf.init_app(app)
    app.register_blueprint(api)

    @app.errorhandler(CSRFError)
    def handle_csrf_error(exc: CSRFError) -> tuple[Response, int]:
        return _json_errors([exc.description], 400)

    @app.errorhandler(RequestEntityTooLarge)
    def handle_too_large(exc: RequestEntityTooLarge) -> tuple[Response, int]:
        return _json_errors(["The upload is too large"], 413)

    return app


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "8000"))
    create_app().run(host=host, port=port)
