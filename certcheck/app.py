import logging
import os

from flask import Flask, abort, current_app, jsonify, send_from_directory
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

from .models import Certificate  # noqa: E402
from .shared.errors import CertcheckError  # noqa: E402
from .shared.storage import FileSystemObjectStore, ensure_dir  # noqa: E402


def _int_list(raw: str) -> list[int]:
    values = []
    for part in (raw or "").split(","):
        part = part.strip()
        if part.lstrip("-").isdigit():
            values.append(int(part))
    return values


def create_app(config: dict | None = None):
    app = Flask(__name__)
    app.secret_key = os.getenv("SECRET_KEY", "dev")

    DB_USER = os.getenv("DB_USER", "certcheck")
    DB_PASSWORD = os.getenv("POSTGRES_PASSWORD", "postgres")
    DB_HOST = os.getenv("DB_HOST", "db")
    DB_NAME = os.getenv("DB_NAME", "certcheck")
    DATABASE_URL = os.getenv(
        "DATABASE_URL",
        f"postgresql+psycopg2://{DB_USER}:{DB_PASSWORD}@{DB_HOST}/{DB_NAME}",
    )

    app.config["SQLALCHEMY_DATABASE_URI"] = DATABASE_URL
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["MAX_CONTENT_LENGTH"] = 25 * 1024 * 1024

    site_root = os.getenv("SITE_ROOT", "/srv")
    public_base_url = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
    app.config["SITE_ROOT"] = site_root
    app.config["PUBLIC_BASE_URL"] = public_base_url
    app.config["MEDIA_ROOT"] = os.getenv("MEDIA_ROOT", os.path.join(site_root, "media"))
    app.config["MEDIA_URL_PREFIX"] = os.getenv(
        "MEDIA_URL_PREFIX", f"{public_base_url}/media"
    )
    app.config["BACKGROUND_FETCH_TIMEOUT"] = float(
        os.getenv("BACKGROUND_FETCH_TIMEOUT", "5")
    )
    app.config["SCANNER_INTERVAL"] = float(os.getenv("SCANNER_INTERVAL", "0.5"))
    app.config["SCANNER_CAMERA_INDICES"] = _int_list(
        os.getenv("SCANNER_CAMERA_INDICES", "1,0")
    )
    if config:
        app.config.update(config)
        if "MEDIA_ROOT" not in config and "SITE_ROOT" in config:
            app.config["MEDIA_ROOT"] = os.path.join(config["SITE_ROOT"], "media")
        if "MEDIA_URL_PREFIX" not in config and "PUBLIC_BASE_URL" in config:
            app.config["MEDIA_URL_PREFIX"] = f"{config['PUBLIC_BASE_URL'].rstrip('/')}/media"

    db.init_app(app)
    app.extensions["certcheck.object_store"] = FileSystemObjectStore(
        app.config["MEDIA_ROOT"], app.config["MEDIA_URL_PREFIX"]
    )

    @app.errorhandler(CertcheckError)
    def handle_certcheck_error(exc: CertcheckError):
        db.session.rollback()
        app.logger.info("[API-ERROR] %s: %s", type(exc).__name__, exc)
        return jsonify({"ok": False, "error": str(exc)}), exc.status_code

    @app.get("/health")
    def health():  # pragma: no cover - simple healthcheck
        return "OK", 200

    @app.get("/media/<path:filename>")
    def media_file(filename: str):
        media_root = app.config["MEDIA_ROOT"]
        if not os.path.isdir(media_root):
            abort(404)
        return send_from_directory(media_root, filename)

    @app.get("/certificate/<cert_id>")
    def view_certificate(cert_id: str):
        cert = db.session.get(Certificate, cert_id)
        if not cert:
            return jsonify({"ok": False}), 404
        event = cert.event
        return jsonify(
            {
                "ok": True,
                "id": cert.id,
                "recipient_name": cert.recipient_name,
                "event_name": event.name if event else None,
                "event_location": event.location if event else None,
                "image_url": cert.artifact_url,
                "issued_at": cert.created_at.isoformat() if cert.created_at else None,
            }
        )

    from .routes.auth import bp as auth_bp
    from .routes.badges import bp as badges_bp
    from .routes.certificates import bp as certificates_bp
    from .routes.checkin import bp as checkin_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(badges_bp)
    app.register_blueprint(certificates_bp)
    app.register_blueprint(checkin_bp)

    with app.app_context():
        try:
            ensure_dir(app.config["MEDIA_ROOT"])
        except OSError:
            logging.warning("media root %s is not writable", app.config["MEDIA_ROOT"])

    return app


def get_object_store() -> FileSystemObjectStore:
    return current_app.extensions["certcheck.object_store"]
