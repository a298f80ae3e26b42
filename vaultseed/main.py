# vaultseed/main.py
#
# -----------------------------------------------------------------------------
# Architectural notes (high level)
# -----------------------------------------------------------------------------
# This file is intentionally "thin" orchestration glue:
#   - It wires HTTP endpoints to the domain primitives implemented elsewhere.
#   - It MUST NOT implement crypto itself (crypto lives in signatures.py + tokens.py).
#   - It MUST NOT decide authorization itself (auth.py + content.py do).
#
# Key modules / responsibilities:
#   - config.py      : environment-driven settings
#   - signatures.py  : personal_sign verification (secp256k1 recovery)
#   - nonces.py      : single-slot nonce registers + per-key locks
#   - storage.py     : identities / encrypted records (memory or sqlite)
#   - auth.py        : login, public key registration, credential checks
#   - content.py     : record submission + decrypt authorization gate
#   - tokens.py      : Ed25519 credential mint/verify
#   - audit.py       : hash-chained audit log (security telemetry, forensics)
#   - qr.py          : pure QR rendering of login challenges (no security)
#
# Error surface:
#   - every Unauthorized subclass -> 401 with one fixed body
#   - every NotFound subclass     -> 404 with one fixed body
#   The precise reason goes to the audit log only.
#
# WARNING (DEPLOYMENT):
# - Per-key locks live in process memory. Across several workers/nodes the
#   store's compare-and-swap still prevents double-spending a nonce, but use
#   STORE_BACKEND=sqlite (shared file) or a real DB, never the memory store.
# - Leave SERVER_ED25519_SK_B64 empty only in development: an ephemeral key
#   logs everybody out on restart and differs between workers.
# -----------------------------------------------------------------------------

import logging
from contextlib import asynccontextmanager, contextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from .audit import AuditLog, build_common
from .auth import Authenticator
from .config import Settings, settings
from .content import ContentAccessController
from .errors import (
    MalformedInput,
    NotFound,
    StorageFailure,
    Unauthorized,
    VaultSeedError,
)
from .logging_config import configure_logging
from .models import CreateContentRequest, DecryptContentRequest, LoginRequest, RegisterPublicKeyRequest
from .nonces import NonceStore
from .qr import make_challenge_qr_svg_bytes
from .signatures import normalize_address, to_checksum_address
from .storage import Identity, Store, open_store
from .tokens import CredentialIssuer, load_or_generate_server_key

logger = logging.getLogger(__name__)

ENCRYPTED_PLACEHOLDER = "[ENCRYPTED - DECRYPT ON CLIENT]"


# -----------------------------------------------------------------------------
# Error mapping
# -----------------------------------------------------------------------------
def _error_response(exc: VaultSeedError) -> JSONResponse:
    if isinstance(exc, MalformedInput):
        return JSONResponse(status_code=400, content={"detail": {"error": "bad_request", "message": str(exc)}})
    if isinstance(exc, NotFound):
        return JSONResponse(status_code=404, content={"detail": {"error": "not_found", "message": "Not found"}})
    if isinstance(exc, Unauthorized):
        return JSONResponse(
            status_code=401,
            content={"detail": {"error": "unauthorized", "message": "Unauthorized"}},
            headers={"WWW-Authenticate": "Bearer"},
        )
    if isinstance(exc, StorageFailure):
        return JSONResponse(
            status_code=503,
            content={"detail": {"error": "storage_unavailable", "message": "Storage unavailable"}},
        )
    return JSONResponse(status_code=500, content={"detail": {"error": "internal_error", "message": "Internal error"}})


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _audit_address(raw: str) -> Optional[str]:
    # canonical form only; malformed input is recorded by its reason instead
    try:
        return normalize_address(raw)
    except MalformedInput:
        return None


# -----------------------------------------------------------------------------
# FastAPI application
# -----------------------------------------------------------------------------
def create_app(cfg: Optional[Settings] = None, store: Optional[Store] = None) -> FastAPI:
    cfg = cfg or settings
    configure_logging(cfg.LOG_LEVEL)

    store = store if store is not None else open_store(cfg)

    # Architectural rule: the server Ed25519 key signs credentials only. It is
    # NOT a user identity key and must never be confused with one.
    server_sk, ephemeral = load_or_generate_server_key(cfg.SERVER_ED25519_SK_B64)
    if ephemeral:
        logger.warning("SERVER_ED25519_SK_B64 not set; using an ephemeral credential signing key")

    nonces = NonceStore(store)
    authenticator = Authenticator(
        store,
        nonces,
        CredentialIssuer(server_sk, cfg.CREDENTIAL_TTL_SECONDS),
        service_name=cfg.SERVICE_NAME,
    )
    content = ContentAccessController(store, nonces)
    audit = AuditLog(cfg.AUDIT_DIR, enabled=cfg.AUDIT_ENABLED)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        store.close()

    app = FastAPI(title="VaultSeed Auth Server", version="0.1.0", lifespan=lifespan)
    app.state.settings = cfg
    app.state.store = store
    app.state.authenticator = authenticator
    app.state.content = content
    app.state.audit = audit

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origin_list,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Origin", "Content-Type", "Authorization", "Accept"],
    )

    @app.exception_handler(VaultSeedError)
    async def _handle_domain_error(request: Request, exc: VaultSeedError):
        if isinstance(exc, StorageFailure):
            logger.error("storage failure on %s: %s", request.url.path, exc)
        else:
            logger.debug("%s on %s: %s", exc.reason, request.url.path, exc)
        return _error_response(exc)

    @contextmanager
    def audited(request: Request, action: str, **fields):
        """
        Record the outcome of one authorization decision.

        Endpoints may add fields to the yielded dict (e.g. the new record id)
        and they end up on the "approved" event.
        """
        base = build_common(
            action=action,
            request_ip=(request.client.host if request.client else None),
            user_agent=request.headers.get("user-agent"),
            **fields,
        )
        extra: dict = {}
        try:
            yield extra
        except VaultSeedError as e:
            result = "error" if isinstance(e, StorageFailure) else "denied"
            audit.append({**base, "result": result, "reason": e.reason})
            raise
        audit.append({**base, **extra, "result": "approved"})

    def current_identity(request: Request) -> Identity:
        return authenticator.authenticate_credential(_bearer_token(request))

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------
    @app.get("/api/health")
    def health():
        return {"status": "ok"}

    # -------------------------------------------------------------------------
    # Auth
    # -------------------------------------------------------------------------
    @app.get("/api/auth/nonce")
    def get_nonce(request: Request, address: str = ""):
        if not address:
            raise MalformedInput("address is required")
        with audited(request, "nonce", address=_audit_address(address)):
            addr, nonce, message = authenticator.challenge_for(address)
        return {"address": addr, "nonce": nonce, "message": message}

    @app.get("/api/auth/challenge.svg")
    def challenge_qr_svg(address: str = ""):
        if not address:
            raise MalformedInput("address is required")
        _, _, message = authenticator.challenge_for(address)
        return Response(content=make_challenge_qr_svg_bytes(message), media_type="image/svg+xml")

    @app.post("/api/auth/login")
    def login(request: Request, body: LoginRequest):
        with audited(
            request,
            "login",
            address=_audit_address(body.address),
            message=body.message,
            signature=body.signature,
        ):
            cred = authenticator.login(body.address, body.message, body.signature)
        return {
            "success": True,
            "token": cred.token,
            "address": cred.address,
            "expires_at": cred.expires_at,
        }

    @app.post("/api/auth/register-public-key")
    def register_public_key(request: Request, body: RegisterPublicKeyRequest):
        with audited(
            request,
            "register_public_key",
            address=_audit_address(body.address),
            message=body.message,
            signature=body.signature,
        ):
            cred = authenticator.register_public_key(body.address, body.public_key, body.message, body.signature)
        return {"success": True, "token": cred.token, "expires_at": cred.expires_at}

    @app.get("/api/auth/me")
    def me(ident: Identity = Depends(current_identity)):
        return {
            "address": ident.address,
            "checksum_address": to_checksum_address(ident.address),
            "public_key": ident.public_key,
        }

    # -------------------------------------------------------------------------
    # Content
    # -------------------------------------------------------------------------
    @app.post("/api/content/create")
    def create_content(request: Request, body: CreateContentRequest, ident: Identity = Depends(current_identity)):
        with audited(request, "create_record", address=ident.address) as extra:
            rec = content.submit_record(ident.address, body.title, body.encrypted_data, body.encrypted_key, body.iv)
            extra["record_id"] = rec.id
        return {"success": True, "id": rec.id}

    @app.get("/api/content/list")
    def list_content(ident: Identity = Depends(current_identity)):
        return {"success": True, "contents": [r.public_view() for r in content.list_records(ident.address)]}

    @app.post("/api/content/decrypt")
    def decrypt_content(request: Request, body: DecryptContentRequest, ident: Identity = Depends(current_identity)):
        with audited(
            request,
            "decrypt",
            address=ident.address,
            record_id=body.content_id,
            message=body.message,
            signature=body.signature,
        ):
            env = content.authorize_decrypt(body.content_id, ident.address, body.message, body.nonce, body.signature)
        return {
            "success": True,
            "content": {
                "id": env.record_id,
                "title": env.title,
                "content": ENCRYPTED_PLACEHOLDER,
                "created_at": env.created_at,
            },
            "encrypted_data": env.ciphertext,
            "encrypted_key": env.wrapped_key,
            "iv": env.iv,
        }

    @app.get("/api/content/{content_id}")
    def content_detail(content_id: int, ident: Identity = Depends(current_identity)):
        rec = content.record_detail(content_id, ident.address)
        return {
            "success": True,
            "content": {
                "id": rec.id,
                "title": rec.title,
                "created_at": rec.created_at,
                "nonce": rec.nonce,
            },
        }

    return app


app = create_app()
