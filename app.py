import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from flask import Blueprint, Flask, current_app, jsonify, request, send_from_directory
from flask_socketio import SocketIO
from werkzeug.exceptions import RequestEntityTooLarge

import config_manager
from config_manager import MediaSettings
from image_processor import ImageProcessor
from ingest_pipeline import IngestPipeline
from media_manager import (
    MediaClassifier,
    MediaManager,
    MediaManagerError,
    ValidationError,
    sanitize_filename,
    sanitize_name,
)
from progress_tracker import ProgressTracker
from side_config import SideConfigStore, validate_side_config
from system_monitor import get_system_stats
from video_processor import EncoderSettings, FFmpegRunner, VideoTranscoder

logger = logging.getLogger(__name__)

PROGRESS_EVENT = "processing_progress"
EXTENSION_KEY = "signage"
# Headroom for multipart boundaries and form fields on top of the file payloads.
MULTIPART_OVERHEAD_BYTES = 1024 * 1024

socketio = SocketIO()
api = Blueprint("media_api", __name__)


@dataclass
class Services:
    settings: MediaSettings
    side_configs: SideConfigStore
    media: MediaManager
    tracker: ProgressTracker
    pipeline: IngestPipeline


def safe_emit(event_name: str, data: Any) -> None:
    """Emit a Socket.IO event defensively, ignoring disconnected clients."""

    if socketio.server is None:
        return
    try:
        socketio.emit(event_name, data)
    except (OSError, BrokenPipeError) as exc:  # pragma: no cover - expected on disconnects
        logger.warning("[SocketIO] Tried to emit to disconnected client for event '%s': %s", event_name, exc)


def build_services(settings: MediaSettings, *, runner: Optional[FFmpegRunner] = None) -> Services:
    side_configs = SideConfigStore(settings.configs_dir)
    media = MediaManager(
        settings.uploads_dir,
        classifier=MediaClassifier.from_settings(settings),
        side_configs=side_configs,
        staging_subdir=settings.staging_subdir,
        thumbnail_suffix=settings.thumbnail_suffix,
    )
    tracker = ProgressTracker()
    encoder = EncoderSettings.from_settings(settings)
    pipeline = IngestPipeline(
        media,
        images=ImageProcessor(
            landscape_box=settings.landscape_box,
            portrait_box=settings.portrait_box,
            quality=settings.webp_quality,
        ),
        videos=VideoTranscoder(
            encoder,
            tracker,
            runner=runner or FFmpegRunner(encoder.ffprobe_path),
            thumbnail_suffix=settings.thumbnail_suffix,
        ),
        workers=settings.processing_workers,
    )
    return Services(
        settings=settings,
        side_configs=side_configs,
        media=media,
        tracker=tracker,
        pipeline=pipeline,
    )


def create_app(config: Optional[Dict[str, Any]] = None, *, runner: Optional[FFmpegRunner] = None) -> Flask:
    """Build the Flask app; staging leftovers from a previous run are purged first."""

    cfg = config_manager.load_config() if config is None else config
    settings = MediaSettings.from_config(cfg)
    services = build_services(settings, runner=runner)

    removed = services.media.recover_staging()
    logger.info(
        "startup uploads=%s configs=%s workers=%d recovered=%d",
        settings.uploads_dir,
        settings.configs_dir,
        settings.processing_workers,
        removed,
    )

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = settings.max_files * settings.max_upload_bytes + MULTIPART_OVERHEAD_BYTES
    app.extensions[EXTENSION_KEY] = services
    app.register_blueprint(api)
    app.register_error_handler(RequestEntityTooLarge, _request_too_large)

    @app.after_request
    def _cors_headers(response):
        if settings.cors_allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = settings.cors_allowed_origins
            response.headers["Access-Control-Allow-Methods"] = "GET, POST, DELETE, OPTIONS"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        return response

    socketio.init_app(
        app,
        async_mode=settings.socketio_async_mode,
        cors_allowed_origins=settings.cors_allowed_origins,
    )
    services.tracker.add_listener(lambda snapshot: safe_emit(PROGRESS_EVENT, snapshot))
    return app


def _services() -> Services:
    return current_app.extensions[EXTENSION_KEY]


def _media_error_response(exc: MediaManagerError):
    status = getattr(exc, "status", 400) or 400
    if status == 413:
        payload = {"error": "File too large", "message": exc.message, "code": exc.code}
    else:
        payload = {"error": exc.message, "code": exc.code}
    return jsonify(payload), status


def _request_too_large(exc: RequestEntityTooLarge):
    limit_mb = (current_app.config.get("MAX_CONTENT_LENGTH") or 0) // (1024 * 1024)
    return (
        jsonify(
            {
                "error": "File too large",
                "message": f"Upload exceeds the {limit_mb} MB request limit",
                "code": "FILE_TOO_LARGE",
            }
        ),
        413,
    )


# --- Media ingestion and listing ---
@api.route("/api/upload", methods=["POST"])
def api_upload():
    services = _services()
    folder = request.args.get("folder", "")
    try:
        files = request.files.getlist(services.settings.upload_field)
        staged = services.media.stage_uploads(folder, files)
        published = services.pipeline.process_batch(staged[0].side, staged)
    except MediaManagerError as exc:
        logger.warning("media.upload.failed folder=%s code=%s error=%s", folder, exc.code, exc.message)
        return _media_error_response(exc)
    logger.info("media.upload folder=%s count=%d", sanitize_name(folder), len(published))
    return jsonify({"message": "Files uploaded and processed successfully", "files": published})


@api.route("/api/files", methods=["GET"])
def api_list_files():
    try:
        payload = _services().media.list_folder(request.args.get("folder", ""))
    except MediaManagerError as exc:
        return _media_error_response(exc)
    return jsonify(payload)


@api.route("/api/files", methods=["DELETE"])
def api_delete_file():
    folder = request.args.get("folder", "")
    filename = request.args.get("filename", "")
    try:
        _services().media.delete_file(folder, filename)
    except MediaManagerError as exc:
        logger.warning("media.delete.failed folder=%s filename=%s error=%s", folder, filename, exc.message)
        return _media_error_response(exc)
    logger.info("media.delete folder=%s filename=%s", sanitize_name(folder), sanitize_filename(filename))
    return jsonify({"success": True})


@api.route("/api/processing-progress", methods=["GET"])
def api_processing_progress():
    return jsonify(_services().tracker.snapshot())


@api.route("/uploads/<folder>/<path:filename>", methods=["GET"])
def serve_upload(folder: str, filename: str):
    media = _services().media
    try:
        directory = media.folder_path(folder)
    except MediaManagerError as exc:
        return _media_error_response(exc)
    return send_from_directory(directory, sanitize_filename(filename) or "_", max_age=0)


# --- Side configs ---
@api.route("/config", methods=["GET"])
def get_side_config():
    side = request.args.get("side", "")
    try:
        if not sanitize_name(side):
            raise ValidationError("Missing side parameter", code="invalid_side")
        config = _services().side_configs.load(side)
    except MediaManagerError as exc:
        return _media_error_response(exc)
    return jsonify(config)


@api.route("/config", methods=["POST"])
def save_side_config():
    payload = request.get_json(silent=True) or {}
    side = payload.get("side") if isinstance(payload, dict) else None
    try:
        if not isinstance(side, str) or not sanitize_name(side):
            raise ValidationError("Missing or invalid side/config in body", code="invalid_config")
        config = validate_side_config(payload.get("config"))
        _services().side_configs.save(side, config)
    except MediaManagerError as exc:
        return _media_error_response(exc)
    except OSError as exc:
        logger.error("Failed to save config for side %s: %s", side, exc)
        return jsonify({"error": "Failed to save config", "code": "save_failed"}), 500
    logger.info("config.save side=%s", sanitize_name(side))
    return jsonify({"status": "ok"})


# --- Device status ---
@api.route("/api/system-stats", methods=["GET"])
def system_stats():
    settings = _services().settings
    return jsonify(get_system_stats(settings.uploads_dir, settings.staging_subdir))


@api.route("/health")
def health():
    return jsonify({"status": "ok"})
