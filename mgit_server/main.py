# mgit_server/main.py
#
# -----------------------------------------------------------------------------
# Architectural notes (high level)
# -----------------------------------------------------------------------------
# Thin HTTP glue:
#   - wires FastAPI endpoints onto AuthGateway (login) and MGitRepos (read-only
#     repository browsing)
#   - MUST NOT implement crypto itself (nostr.py verifies login events,
#     tokens.py signs/validates session tokens)
#
# Key modules / responsibilities:
#   - config.py   : environment-driven settings
#   - storage.py  : challenge store (pending -> verified, TTL eviction)
#   - nostr.py    : NIP-01 event checks + BIP-340 signature verification
#   - metadata.py : best-effort kind-0 profile lookup on a relay
#   - tokens.py   : Ed25519-signed session tokens
#   - gateway.py  : login orchestration
#   - audit.py    : hash-chained login audit log
#   - repos.py    : mgit CLI wrapper behind the protected /api/repos endpoints
#
# Login flow:
#   browser POST /api/auth/nostr/challenge       -> {challenge, tag}
#   signer signs an event referencing the challenge
#   browser POST /api/auth/nostr/verify          -> {status, pubkey, metadata, token}
#   polling  GET /api/auth/nostr/status?challenge=...  (first verified poll
#            also carries the token, for QR / cross-device login)
#   then every /api/repos/* call carries "Authorization: Bearer <token>"
#
# WARNING (DEPLOYMENT):
# - The challenge store is in-process memory: it is NOT shared across uvicorn
#   workers. Run one worker, or back ChallengeStore with a shared store.
# -----------------------------------------------------------------------------

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

import uvicorn
from fastapi import Body, Depends, FastAPI, Header, Request
from fastapi.exception_handlers import request_validation_exception_handler as default_validation_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from .audit import AuditLog
from .config import settings
from .errors import AuthError
from .gateway import AuthGateway
from .metadata import MetadataEnricher
from .models import ChallengeResponse, SessionClaims, VerifyResponse
from .nip05 import Nip05Error, fetch_nostr_json
from .nostr import EventVerifier
from .qr import login_uri, make_qr_svg_bytes
from .repos import CommitNotFound, InvalidPath, MGitRepos, RepoNotFound
from .storage import ChallengeKind, InMemoryChallengeStore
from .tokens import SessionIssuer, signing_key_from_settings

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

EVICTION_INTERVAL_SECONDS = 60


# -----------------------------------------------------------------------------
# Components
# -----------------------------------------------------------------------------
def build_gateway() -> AuthGateway:
    store = InMemoryChallengeStore(
        ttl_seconds=settings.CHALLENGE_TTL_SECONDS,
        verified_retention_seconds=settings.CHALLENGE_VERIFIED_RETENTION_SECONDS,
        max_entries=settings.CHALLENGE_MAX_ENTRIES,
    )
    enricher = None
    if settings.METADATA_ENABLED:
        enricher = MetadataEnricher(settings.NOSTR_RELAY_URL, timeout=settings.METADATA_TIMEOUT_SECONDS)
    return AuthGateway(
        store=store,
        verifier=EventVerifier(store, max_age_seconds=settings.EVENT_MAX_AGE_SECONDS),
        issuer=SessionIssuer(
            signing_key_from_settings(settings.SESSION_SIGNING_KEY_B64),
            ttl_seconds=settings.SESSION_TTL_SECONDS,
        ),
        enricher=enricher,
        audit=AuditLog(settings.AUDIT_DIR, enabled=settings.AUDIT_ENABLED),
    )


gateway = build_gateway()
repos = MGitRepos(settings.REPOS_PATH, mgit_bin=settings.MGIT_BIN)


def get_gateway() -> AuthGateway:
    return gateway


def get_repos() -> MGitRepos:
    return repos


def require_session(
    authorization: Optional[str] = Header(default=None),
    gw: AuthGateway = Depends(get_gateway),
) -> SessionClaims:
    return gw.authenticate(authorization)


def _client(request: Request) -> dict:
    return {
        "request_ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


# -----------------------------------------------------------------------------
# FastAPI application
# -----------------------------------------------------------------------------
async def _evict_forever(gw: AuthGateway) -> None:
    while True:
        await asyncio.sleep(EVICTION_INTERVAL_SECONDS)
        removed = gw.store.evict_expired()
        if removed:
            logger.debug("auth.challenges_evicted count=%d", removed)


@asynccontextmanager
async def lifespan(app: FastAPI):
    task = asyncio.create_task(_evict_forever(gateway))
    try:
        yield
    finally:
        task.cancel()


app = FastAPI(
    title="MGit Server",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError):
    return JSONResponse(status_code=exc.status_code, content={"status": "error", "reason": exc.reason})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    # login routes keep the {"status": "error", "reason"} envelope, e.g. for a body that is not JSON
    if request.url.path.startswith("/api/auth/"):
        return JSONResponse(status_code=400, content={"status": "error", "reason": "Invalid event format"})
    return await default_validation_handler(request, exc)


@app.exception_handler(RepoNotFound)
async def repo_not_found_handler(request: Request, exc: RepoNotFound):
    return JSONResponse(status_code=404, content={"error": "Repository not found"})


@app.exception_handler(CommitNotFound)
async def commit_not_found_handler(request: Request, exc: CommitNotFound):
    return JSONResponse(status_code=404, content={"error": "Commit not found"})


@app.exception_handler(InvalidPath)
async def invalid_path_handler(request: Request, exc: InvalidPath):
    return JSONResponse(status_code=400, content={"error": "Invalid path parameters"})


# -----------------------------------------------------------------------------
# Nostr login
# -----------------------------------------------------------------------------
@app.post("/api/auth/nostr/challenge", response_model=ChallengeResponse)
def nostr_challenge(request: Request, gw: AuthGateway = Depends(get_gateway)):
    return gw.issue_challenge(ChallengeKind.NOSTR.value, **_client(request))


@app.get("/api/auth/nostr/challenge/{challenge}/qr.svg")
def nostr_challenge_qr(challenge: str, gw: AuthGateway = Depends(get_gateway)):
    ch = gw.status(challenge, kind=ChallengeKind.NOSTR.value)
    svg_bytes = make_qr_svg_bytes(login_uri(ch.id, settings.ORIGIN))
    return Response(content=svg_bytes, media_type="image/svg+xml")


@app.post("/api/auth/nostr/verify", response_model=VerifyResponse)
async def nostr_verify(
    request: Request,
    body: Any = Body(None),
    gw: AuthGateway = Depends(get_gateway),
):
    # anything but {"signedEvent": {...}} is rejected by the verifier as malformed
    signed_event = body.get("signedEvent") if isinstance(body, dict) else None
    try:
        return await gw.verify_response(signed_event, **_client(request))
    except AuthError:
        raise
    except Exception:
        logger.exception("auth.verify_error")
        return JSONResponse(status_code=500, content={"status": "error", "reason": "Verification failed"})


# Declared before the generic /{kind}/status route so it is not shadowed.
@app.get("/api/auth/nostr/status")
def nostr_status(
    challenge: Optional[str] = None,
    k1: Optional[str] = None,
    gw: AuthGateway = Depends(get_gateway),
):
    return gw.poll(challenge or k1, kind=ChallengeKind.NOSTR.value, info_key="userInfo")


@app.get("/api/auth/{kind}/status")
def challenge_status(
    kind: str,
    k1: Optional[str] = None,
    challenge: Optional[str] = None,
    gw: AuthGateway = Depends(get_gateway),
):
    logger.debug("auth.status_check kind=%s k1=%s", kind, k1 or challenge)
    return gw.poll(k1 or challenge, kind=kind, info_key="nodeInfo")


@app.get("/api/nostr/nip05/verify")
async def nip05_verify(domain: Optional[str] = None, name: Optional[str] = None):
    if not domain or not name:
        return JSONResponse(status_code=400, content={"error": "Domain and name parameters are required"})
    try:
        return await fetch_nostr_json(domain, name, timeout=settings.NIP05_TIMEOUT_SECONDS)
    except ValueError as e:
        return JSONResponse(status_code=400, content={"error": str(e)})
    except Nip05Error:
        return JSONResponse(status_code=502, content={"error": "Failed to verify NIP-05"})


# -----------------------------------------------------------------------------
# Repositories (protected)
# -----------------------------------------------------------------------------
@app.get("/api/repos")
def list_repos(claims: SessionClaims = Depends(require_session), r: MGitRepos = Depends(get_repos)):
    return r.list_repos()


@app.get("/api/repos/{owner}/{repo}")
def repo_info(
    owner: str,
    repo: str,
    claims: SessionClaims = Depends(require_session),
    r: MGitRepos = Depends(get_repos),
):
    return r.repo_info(owner, repo)


@app.get("/api/repos/{owner}/{repo}/branches")
def repo_branches(
    owner: str,
    repo: str,
    claims: SessionClaims = Depends(require_session),
    r: MGitRepos = Depends(get_repos),
):
    path = r.repo_path(owner, repo)
    default = r.default_branch(path)
    return [{"name": b, "isDefault": b == default} for b in r.branches(path)]


@app.get("/api/repos/{owner}/{repo}/contents")
def repo_contents(
    owner: str,
    repo: str,
    path: str = "",
    ref: str = "",
    claims: SessionClaims = Depends(require_session),
    r: MGitRepos = Depends(get_repos),
):
    # working-tree listing; `ref` is accepted for API symmetry
    return r.contents(r.repo_path(owner, repo), path)


@app.get("/api/repos/{owner}/{repo}/file")
def repo_file(
    owner: str,
    repo: str,
    path: str = "",
    ref: str = "",
    claims: SessionClaims = Depends(require_session),
    r: MGitRepos = Depends(get_repos),
):
    if not path:
        return JSONResponse(status_code=400, content={"error": "File path is required"})
    repo_path = r.repo_path(owner, repo)
    return r.file_content(repo_path, path, ref or r.default_branch(repo_path))


@app.get("/api/repos/{owner}/{repo}/commits")
def repo_commits(
    owner: str,
    repo: str,
    ref: str = "",
    path: str = "",
    claims: SessionClaims = Depends(require_session),
    r: MGitRepos = Depends(get_repos),
):
    repo_path = r.repo_path(owner, repo)
    return r.commit_history(repo_path, ref or r.default_branch(repo_path), path)


@app.get("/api/repos/{owner}/{repo}/commits/{sha}")
def repo_commit(
    owner: str,
    repo: str,
    sha: str,
    claims: SessionClaims = Depends(require_session),
    r: MGitRepos = Depends(get_repos),
):
    return r.commit_detail(r.repo_path(owner, repo), sha)


# -----------------------------------------------------------------------------
# Prebuilt front end (client-side routing)
# -----------------------------------------------------------------------------
class SPAStaticFiles(StaticFiles):
    """Serve index.html for unknown non-API paths."""

    async def get_response(self, path: str, scope):
        try:
            return await super().get_response(path, scope)
        except StarletteHTTPException as e:
            if e.status_code != 404 or path.startswith("api/"):
                raise
            return await super().get_response("index.html", scope)


if (settings.PUBLIC_DIR / "index.html").is_file():
    app.mount("/", SPAStaticFiles(directory=str(settings.PUBLIC_DIR), html=True), name="public")


def run() -> None:
    uvicorn.run("mgit_server.main:app", host="0.0.0.0", port=3003)
