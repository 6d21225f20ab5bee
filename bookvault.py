import enum
import logging
import os
import secrets
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from functools import wraps
from pathlib import Path
from typing import Optional

import click
from flask import Flask, jsonify, make_response, request, send_file, url_for
from flask_sqlalchemy import SQLAlchemy
from itsdangerous import BadSignature, URLSafeTimedSerializer
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.security import check_password_hash, generate_password_hash


logger = logging.getLogger(__name__)

db = SQLAlchemy()

SESSION_COOKIE = "session_token"
# Largest id a 64-bit INTEGER column can hold.
MAX_ROW_ID = 2**63 - 1


def utcnow():
    return datetime.now(timezone.utc)


class Role(str, enum.Enum):
    USER = "USER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


ROLE_VALUES = {role.value for role in Role}
STAFF_ROLES = (Role.ADMIN, Role.SUPER_ADMIN)


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=True)
    role = db.Column(db.String(20), nullable=False, default=Role.USER.value)
    name = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(40), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Book(db.Model):
    __tablename__ = "books"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False, index=True)
    author = db.Column(db.String(255), nullable=True)
    book_file = db.Column(db.String(500), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    status = db.Column(db.String(40), nullable=False, default="PAID")
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    book_id = db.Column(db.Integer, db.ForeignKey("books.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    price_cents = db.Column(db.Integer, nullable=False, default=0)


class Device(db.Model):
    __tablename__ = "devices"

    id = db.Column(db.Integer, primary_key=True)
    device_id = db.Column(db.String(255), unique=True, nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    admin_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    action = db.Column(db.String(255), nullable=False)
    ip_address = db.Column(db.String(64), nullable=True)
    device_info = db.Column(db.String(512), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class SecurityEvent(db.Model):
    __tablename__ = "security_events"

    id = db.Column(db.Integer, primary_key=True)
    event_type = db.Column(db.String(120), nullable=False, index=True)
    severity = db.Column(db.String(20), nullable=False, default="warning")
    ip_address = db.Column(db.String(64), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    details = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class AccessError(Exception):
    """Base for every failure the access gate reports to the client."""

    code = "INTERNAL"
    status_code = 500
    message = "Internal Server Error"
    security_event = None

    def __init__(self, message=None, **extra):
        self.message = message or self.message
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self):
        body = {"code": self.code, "message": self.message}
        body.update(self.extra)
        return body


class BadRequest(AccessError):
    code = "BAD_REQUEST"
    status_code = 400
    message = "Bad request."


class Unauthenticated(AccessError):
    code = "UNAUTHENTICATED"
    status_code = 401
    message = "Authentication required."


class InvalidCredential(AccessError):
    code = "INVALID_CREDENTIAL"
    status_code = 401
    message = "Invalid or expired session."
    security_event = "invalid_credential"


class Forbidden(AccessError):
    code = "FORBIDDEN"
    status_code = 403
    message = "Forbidden."


class DeviceConflict(AccessError):
    code = "DEVICE_CONFLICT"
    status_code = 403
    message = "This device is already registered with another account."
    security_event = "device_conflict"


class DeviceCapExceeded(AccessError):
    code = "DEVICE_CAP_EXCEEDED"
    status_code = 409
    message = "Device limit reached. Confirm to replace your oldest device."
    security_event = "device_cap_exceeded"

    def __init__(self, oldest_device_id, max_devices, message=None):
        super().__init__(
            message,
            requiresConfirmation=True,
            oldestDeviceId=oldest_device_id,
            maxDevices=max_devices,
        )
        self.oldest_device_id = oldest_device_id
        self.max_devices = max_devices


class NotEntitled(AccessError):
    code = "NOT_ENTITLED"
    status_code = 403
    message = "This book is not available for this account."


class AssetMissing(AccessError):
    code = "ASSET_MISSING"
    status_code = 404
    message = "Book not found or has no file."


class NotFound(AccessError):
    code = "NOT_FOUND"
    status_code = 404
    message = "Not found."


class SignedURLInvalid(AccessError):
    code = "SIGNATURE_INVALID"
    status_code = 403
    message = "Invalid signed URL."


class SignedURLExpired(AccessError):
    code = "SIGNATURE_EXPIRED"
    status_code = 403
    message = "Signed URL has expired."


@dataclass(frozen=True)
class Identity:
    id: int
    role: Role


class SessionIdentityResolver:
    """Signs and verifies the session credential carried in the ``session_token`` cookie.

    The payload is ``{"id": <user id>, "role": <role>}``; age is checked against ``max_age``.
    """

    def __init__(self, secret_key, max_age):
        self.serializer = URLSafeTimedSerializer(secret_key, salt="session")
        self.max_age = max_age

    def issue(self, user):
        return self.serializer.dumps({"id": user.id, "role": user.role})

    def resolve(self, credential):
        if not credential:
            raise Unauthenticated()
        try:
            payload = self.serializer.loads(credential, max_age=self.max_age)
        except BadSignature as exc:
            raise InvalidCredential() from exc

        if not isinstance(payload, dict):
            raise InvalidCredential()
        user_id = payload.get("id")
        role = payload.get("role")
        if not isinstance(user_id, int) or isinstance(user_id, bool) or role not in ROLE_VALUES:
            raise InvalidCredential()
        return Identity(id=user_id, role=Role(role))


def credential_from_request():
    token = request.cookies.get(SESSION_COOKIE)
    if token:
        return token
    header = request.headers.get("Authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


@dataclass(frozen=True)
class DeviceBindingResult:
    user_id: int
    device_id: str
    created: bool
    evicted_device_id: Optional[str] = None


class DeviceBindingLedger:
    """Device id to account bindings, capped at ``max_devices`` per account.

    Device ids are client generated and trusted as presented; the ledger only guarantees that a
    device id belongs to one account and that no account holds more than ``max_devices``.
    """

    def __init__(self, max_devices=3, bind_attempts=3):
        self.max_devices = max_devices
        self.bind_attempts = bind_attempts

    def _lookup(self, device_id):
        return Device.query.filter_by(device_id=device_id).first()

    def _count(self, user_id):
        return Device.query.filter_by(user_id=user_id).count()

    def _lock_user(self, user_id):
        # Serializes count-then-insert per account on backends with row locks.
        user = User.query.filter_by(id=user_id).with_for_update().first()
        if user is None:
            db.session.rollback()
            raise InvalidCredential("Account no longer exists.")
        return user

    def devices_for(self, user_id):
        return (
            Device.query.filter_by(user_id=user_id)
            .order_by(Device.created_at.asc(), Device.id.asc())
            .all()
        )

    def oldest(self, user_id):
        return (
            Device.query.filter_by(user_id=user_id)
            .order_by(Device.created_at.asc(), Device.id.asc())
            .first()
        )

    def _cap_exceeded(self, user_id):
        oldest = self.oldest(user_id)
        oldest_device_id = oldest.device_id if oldest else None
        db.session.rollback()
        return DeviceCapExceeded(oldest_device_id=oldest_device_id, max_devices=self.max_devices)

    def resolve_or_register(self, user_id, device_id):
        if not device_id:
            raise BadRequest("No device ID supplied.")

        for attempt in range(1, self.bind_attempts + 1):
            existing = self._lookup(device_id)
            if existing is not None:
                if existing.user_id != user_id:
                    logger.debug("device %s owned by user_id=%s, requested by user_id=%s", device_id, existing.user_id, user_id)
                    raise DeviceConflict()
                return DeviceBindingResult(user_id=user_id, device_id=device_id, created=False)

            self._lock_user(user_id)
            count = self._count(user_id)
            logger.debug("user_id=%s has %d/%d devices bound", user_id, count, self.max_devices)
            if count >= self.max_devices:
                raise self._cap_exceeded(user_id)

            db.session.add(Device(user_id=user_id, device_id=device_id))
            try:
                db.session.flush()
            except IntegrityError:
                db.session.rollback()
                logger.info(
                    "device %s was bound concurrently, re-reading (attempt %d/%d)",
                    device_id,
                    attempt,
                    self.bind_attempts,
                )
                continue

            if self._count(user_id) > self.max_devices:
                raise self._cap_exceeded(user_id)

            db.session.commit()
            logger.info("device registered user_id=%s device_id=%s", user_id, device_id)
            return DeviceBindingResult(user_id=user_id, device_id=device_id, created=True)

        raise RuntimeError(f"could not bind device {device_id} after {self.bind_attempts} attempts")

    def evict_oldest(self, user_id):
        oldest = self.oldest(user_id)
        if oldest is None:
            return None
        device_id = oldest.device_id
        db.session.delete(oldest)
        db.session.commit()
        return device_id

    def remove(self, device_id, user_id=None):
        query = Device.query.filter_by(device_id=device_id)
        if user_id is not None:
            query = query.filter_by(user_id=user_id)
        removed = query.delete(synchronize_session=False)
        db.session.commit()
        return bool(removed)


def _owns_book(identity, book_id):
    if book_id > MAX_ROW_ID:
        return False
    item = (
        db.session.query(OrderItem.id)
        .join(Order, Order.id == OrderItem.order_id)
        .filter(Order.user_id == identity.id, OrderItem.book_id == book_id)
        .first()
    )
    return item is not None


def _always_allowed(identity, book_id):
    return True


# The only place where roles change what a reader may open.
ENTITLEMENT_POLICIES = {
    Role.USER: _owns_book,
    Role.ADMIN: _owns_book,
    Role.SUPER_ADMIN: _always_allowed,
}


def is_entitled(identity, book_id):
    return ENTITLEMENT_POLICIES[identity.role](identity, book_id)


@dataclass(frozen=True)
class SignedURL:
    url: str
    key: str
    expires_in: int
    expires_at: datetime


class LocalObjectStore:
    """Private blob storage on disk, readable only through signed, time-boxed URLs."""

    def __init__(self, root, secret_key):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.serializer = URLSafeTimedSerializer(secret_key, salt="blob-read")

    def path_for(self, key):
        path = (self.root / key).resolve()
        if self.root not in path.parents:
            raise AssetMissing()
        return path

    def signed_url(self, key, expires_in, disposition="inline"):
        token = self.serializer.dumps(
            {
                "key": key,
                "action": "read",
                "disposition": disposition,
                "ttl": int(expires_in),
                "nonce": secrets.token_urlsafe(8),
            }
        )
        return SignedURL(
            url=url_for("read_blob", token=token, _external=True),
            key=key,
            expires_in=int(expires_in),
            expires_at=utcnow() + timedelta(seconds=expires_in),
        )

    def verify(self, token):
        try:
            payload, issued_at = self.serializer.loads(token, return_timestamp=True)
        except BadSignature as exc:
            raise SignedURLInvalid() from exc
        if payload.get("action") != "read" or not payload.get("key"):
            raise SignedURLInvalid()
        if utcnow() - issued_at > timedelta(seconds=payload.get("ttl", 0)):
            raise SignedURLExpired()
        return payload


class EntitlementIssuer:
    def __init__(self, store, ttl_seconds=300):
        self.store = store
        self.ttl_seconds = ttl_seconds

    def authorize_and_issue(self, identity, binding, book_id):
        if binding is None or binding.user_id != identity.id:
            raise ValueError("device binding does not belong to the caller")

        if not is_entitled(identity, book_id):
            raise NotEntitled()

        book = db.session.get(Book, book_id) if book_id <= MAX_ROW_ID else None
        if book is None or not book.book_file:
            raise AssetMissing()

        return self.store.signed_url(book.book_file, expires_in=self.ttl_seconds, disposition="inline")


class AccessGuard:
    """Runs a book-open request through identity, device binding and entitlement."""

    def __init__(self, resolver, ledger, issuer):
        self.resolver = resolver
        self.ledger = ledger
        self.issuer = issuer

    def bind_device(self, identity, device_id, confirm_eviction=False):
        try:
            return self.ledger.resolve_or_register(identity.id, device_id)
        except DeviceCapExceeded:
            if not confirm_eviction:
                raise

        evicted = None
        try:
            evicted = self.ledger.evict_oldest(identity.id)
        except SQLAlchemyError:
            db.session.rollback()
            logger.warning("failed to evict oldest device user_id=%s", identity.id, exc_info=True)
        else:
            logger.info("evicted oldest device user_id=%s evicted_device_id=%s", identity.id, evicted)

        binding = self.ledger.resolve_or_register(identity.id, device_id)
        return replace(binding, evicted_device_id=evicted)


def create_app(config=None):
    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = os.getenv("DATABASE_URL", "sqlite:///bookvault.db")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", secrets.token_hex(32))
    app.config["SESSION_TTL_SECONDS"] = int(os.getenv("SESSION_TTL_SECONDS", "604800"))
    app.config["SESSION_COOKIE_SECURE"] = os.getenv("SESSION_COOKIE_SECURE", "true").lower() == "true"
    app.config["MAX_DEVICES"] = int(os.getenv("MAX_DEVICES", "3"))
    app.config["DEVICE_BIND_ATTEMPTS"] = int(os.getenv("DEVICE_BIND_ATTEMPTS", "3"))
    app.config["SIGNED_URL_TTL_SECONDS"] = int(os.getenv("SIGNED_URL_TTL_SECONDS", "300"))
    app.config["PRIVATE_STORAGE_ROOT"] = os.getenv(
        "PRIVATE_STORAGE_ROOT", str(Path(__file__).resolve().parent / "private_storage")
    )
    app.config["LOG_LEVEL"] = os.getenv("LOG_LEVEL", "INFO")
    if config:
        app.config.update(config)

    logging.basicConfig(
        level=app.config["LOG_LEVEL"].upper(),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )

    db.init_app(app)

    with app.app_context():
        db.create_all()

    store = LocalObjectStore(app.config["PRIVATE_STORAGE_ROOT"], app.config["SECRET_KEY"])
    guard = AccessGuard(
        resolver=SessionIdentityResolver(app.config["SECRET_KEY"], app.config["SESSION_TTL_SECONDS"]),
        ledger=DeviceBindingLedger(app.config["MAX_DEVICES"], app.config["DEVICE_BIND_ATTEMPTS"]),
        issuer=EntitlementIssuer(store, app.config["SIGNED_URL_TTL_SECONDS"]),
    )
    app.extensions["bookvault"] = guard

    def get_client_ip():
        forwarded = request.headers.get("X-Forwarded-For")
        return forwarded.split(",")[0].strip() if forwarded else (request.remote_addr or "unknown")

    def log_admin_action(admin_id, action):
        db.session.add(
            AuditLog(
                admin_user_id=admin_id,
                action=action,
                ip_address=get_client_ip(),
                device_info=request.user_agent.string,
            )
        )
        db.session.commit()

    def log_security_event(event_type, severity="warning", user_id=None, details=None):
        db.session.add(
            SecurityEvent(
                event_type=event_type,
                severity=severity,
                ip_address=get_client_ip(),
                user_id=user_id,
                details=details,
            )
        )
        db.session.commit()

    def authenticate():
        identity = guard.resolver.resolve(credential_from_request())
        user = db.session.get(User, identity.id)
        if user is None:
            raise InvalidCredential()
        if not user.is_active:
            raise Forbidden("Account deactivated.")
        return identity

    def require_auth(roles=None):
        def decorator(fn):
            @wraps(fn)
            def wrapped(*args, **kwargs):
                identity = authenticate()
                if roles and identity.role not in roles:
                    raise Forbidden()
                request.identity = identity
                return fn(*args, **kwargs)

            return wrapped

        return decorator

    def as_data():
        return request.get_json(silent=True) or request.form

    def eviction_confirmed():
        flag = request.headers.get("X-Evict-Oldest") or request.args.get("evict_oldest") or ""
        return flag.strip().lower() in {"1", "true", "yes"}

    def device_to_dict(device):
        return {
            "deviceId": device.device_id,
            "userId": device.user_id,
            "createdAt": device.created_at.isoformat(),
        }

    @app.errorhandler(AccessError)
    def handle_access_error(exc):
        return jsonify(exc.to_dict()), exc.status_code

    @app.after_request
    def add_security_headers(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

    @app.get("/health")
    def health():
        return jsonify({"status": "ok"})

    @app.get("/access/", defaults={"book_id": None})
    @app.get("/access/<book_id>")
    def access_book(book_id):
        started = time.monotonic()
        device_id = (request.headers.get("X-Device-Id") or request.args.get("device_id") or "").strip()
        identity = None

        def elapsed_ms():
            return int((time.monotonic() - started) * 1000)

        try:
            if not book_id:
                raise BadRequest("Book ID is required.")
            if not book_id.isdecimal():
                raise BadRequest("Book ID must be numeric.")

            identity = authenticate()
            if not device_id:
                raise BadRequest("No device ID supplied.")

            logger.info(
                "access request user_id=%s role=%s device_id=%s book_id=%s",
                identity.id,
                identity.role.value,
                device_id,
                book_id,
            )
            binding = guard.bind_device(identity, device_id, confirm_eviction=eviction_confirmed())
            if binding.evicted_device_id:
                log_security_event(
                    "device_evicted",
                    severity="info",
                    user_id=identity.id,
                    details=f"evicted={binding.evicted_device_id} replaced_by={device_id}",
                )
            signed = guard.issuer.authorize_and_issue(identity, binding, int(book_id))
        except AccessError as exc:
            user_id = identity.id if identity else None
            logger.warning(
                "access denied code=%s user_id=%s book_id=%s device_id=%s duration_ms=%d",
                exc.code,
                user_id,
                book_id,
                device_id,
                elapsed_ms(),
            )
            if exc.security_event:
                log_security_event(
                    exc.security_event,
                    user_id=user_id,
                    details=f"book_id={book_id} device_id={device_id}",
                )
            return handle_access_error(exc)
        except Exception:
            db.session.rollback()
            logger.exception(
                "access failed user_id=%s book_id=%s device_id=%s duration_ms=%d",
                identity.id if identity else None,
                book_id,
                device_id,
                elapsed_ms(),
            )
            return handle_access_error(AccessError())

        logger.info(
            "access granted user_id=%s book_id=%s device_id=%s duration_ms=%d",
            identity.id,
            book_id,
            device_id,
            elapsed_ms(),
        )
        return jsonify({"url": signed.url, "expiresIn": signed.expires_in})

    @app.get("/blobs/<token>")
    def read_blob(token):
        payload = store.verify(token)
        path = store.path_for(payload["key"])
        if not path.is_file():
            raise AssetMissing("File unavailable.")
        response = send_file(
            path,
            mimetype="application/pdf",
            as_attachment=payload.get("disposition") == "attachment",
            download_name=path.name,
        )
        response.headers["Cache-Control"] = "private, no-store"
        return response

    @app.post("/auth/login")
    def login():
        data = as_data()
        email = (data.get("email") or "").strip().lower()
        password = data.get("password") or ""
        if not email or not password:
            raise BadRequest("Email and password required.")

        user = User.query.filter_by(email=email).first()
        if not user or not user.password_hash or not check_password_hash(user.password_hash, password):
            raise Unauthenticated("Invalid credentials.")
        if not user.is_active:
            raise Forbidden("Account deactivated.")

        token = guard.resolver.issue(user)
        logger.info("login user_id=%s role=%s", user.id, user.role)
        resp = make_response(jsonify({"message": "Logged in", "role": user.role}))
        resp.set_cookie(
            SESSION_COOKIE,
            token,
            httponly=True,
            secure=app.config["SESSION_COOKIE_SECURE"],
            samesite="Strict",
            max_age=app.config["SESSION_TTL_SECONDS"],
        )
        return resp

    @app.post("/auth/logout")
    def logout():
        resp = make_response(jsonify({"message": "Logged out"}))
        resp.delete_cookie(SESSION_COOKIE)
        return resp

    @app.get("/auth/me")
    @require_auth()
    def me():
        user = db.session.get(User, request.identity.id)
        if not user:
            raise NotFound("User not found.")
        return jsonify({"id": user.id, "email": user.email, "role": user.role, "name": user.name})

    @app.get("/devices")
    @require_auth()
    def my_devices():
        devices = guard.ledger.devices_for(request.identity.id)
        return jsonify({"devices": [device_to_dict(d) for d in devices], "maxDevices": guard.ledger.max_devices})

    @app.delete("/devices/<device_id>")
    @require_auth()
    def remove_my_device(device_id):
        if not guard.ledger.remove(device_id, user_id=request.identity.id):
            raise NotFound("Device not found.")
        logger.info("device removed by owner user_id=%s device_id=%s", request.identity.id, device_id)
        return jsonify({"message": "Device removed"})

    @app.get("/admin/users/<int:user_id>/devices")
    @require_auth(roles=STAFF_ROLES)
    def admin_user_devices(user_id):
        if not db.session.get(User, user_id):
            raise NotFound("User not found.")
        return jsonify([device_to_dict(d) for d in guard.ledger.devices_for(user_id)])

    @app.delete("/admin/devices/<device_id>")
    @require_auth(roles=STAFF_ROLES)
    def admin_remove_device(device_id):
        if not guard.ledger.remove(device_id):
            raise NotFound("Device not found.")
        log_admin_action(request.identity.id, f"device_remove:{device_id}")
        return jsonify({"message": "Device removed"})

    @app.post("/admin/users/<int:user_id>/books")
    @require_auth(roles=STAFF_ROLES)
    def admin_grant_book(user_id):
        data = as_data()
        raw = data.get("book_id")
        if isinstance(raw, bool) or not str(raw if raw is not None else "").isdecimal():
            raise BadRequest("book_id is required.")
        book_id = int(raw)
        if book_id > MAX_ROW_ID:
            raise NotFound("Book not found.")

        user = db.session.get(User, user_id)
        if not user:
            raise NotFound("User not found.")
        if not db.session.get(Book, book_id):
            raise NotFound("Book not found.")
        if _owns_book(Identity(id=user.id, role=Role.USER), book_id):
            return jsonify({"message": "Book already granted"})

        order = Order(user_id=user.id, status="GRANTED", total_cents=0)
        db.session.add(order)
        db.session.flush()
        db.session.add(OrderItem(order_id=order.id, book_id=book_id, quantity=1, price_cents=0))
        db.session.commit()
        log_admin_action(request.identity.id, f"book_grant:{user.id}:{book_id}")
        return jsonify({"message": "Book granted", "order_id": order.id}), 201

    @app.delete("/admin/users/<int:user_id>/books/<int:book_id>")
    @require_auth(roles=STAFF_ROLES)
    def admin_revoke_book(user_id, book_id):
        order_ids = select(Order.id).where(Order.user_id == user_id)
        removed = OrderItem.query.filter(
            OrderItem.book_id == book_id,
            OrderItem.order_id.in_(order_ids),
        ).delete(synchronize_session=False)
        if not removed:
            db.session.rollback()
            raise NotFound("User does not own this book.")
        db.session.commit()
        log_admin_action(request.identity.id, f"book_revoke:{user_id}:{book_id}")
        return jsonify({"message": "Book revoked", "removed": int(removed)})

    @app.cli.command("create-user")
    @click.argument("email")
    @click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
    @click.option("--role", type=click.Choice(sorted(ROLE_VALUES)), default=Role.USER.value, show_default=True)
    @click.option("--name", default=None)
    def create_user_command(email, password, role, name):
        """Create a reader or back-office account."""
        email = email.strip().lower()
        if User.query.filter_by(email=email).first():
            raise click.ClickException(f"{email} is already registered")
        user = User(email=email, password_hash=generate_password_hash(password), role=role, name=name)
        db.session.add(user)
        db.session.commit()
        click.echo(f"Created {role} {email} (id={user.id})")

    @app.cli.command("add-book")
    @click.argument("title")
    @click.option("--author", default=None)
    @click.option("--file", "book_file", default=None, help="Object-store key of the PDF.")
    def add_book_command(title, author, book_file):
        """Register a book and the storage key of its PDF."""
        book = Book(title=title, author=author, book_file=book_file)
        db.session.add(book)
        db.session.commit()
        click.echo(f"Created book {title} (id={book.id})")

    return app


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=5000, debug=True)
