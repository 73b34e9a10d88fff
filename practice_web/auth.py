"""
Authentication wiring.

A signed cookie session is the default scheme; challenges are delegated
to an external OpenID Connect provider with the authorization-code flow
(Authlib's Starlette client). Provider claims are stored in the session
under their wire names unless inbound claim mapping is switched on.

Endpoints:
    GET /login       - challenge: redirect to the provider
    GET /signin-oidc - callback: exchange the code, sign the user in
    GET /signout     - drop the local session
"""

import logging
import secrets
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

from authlib.integrations.starlette_client import OAuth
from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from fastapi.responses import RedirectResponse
from starlette.authentication import AuthCredentials, AuthenticationBackend, SimpleUser
from starlette.requests import HTTPConnection

from practice_web.config import IdentityProviderConfig, StartupOptions
from practice_web.secret_provider import SecretProvider

logger = logging.getLogger(__name__)

SESSION_COOKIE = "practice_web.session"
CALLBACK_ROUTE = "signin_oidc"

# Claims that only matter to the protocol exchange itself.
PROTOCOL_CLAIMS = frozenset({
    "nonce", "aud", "azp", "acr", "iss", "iat", "nbf", "exp",
    "at_hash", "c_hash", "ipaddr", "platf", "ver",
})

USERINFO_JSON_KEYS = ("sub", "name", "given_name", "family_name", "profile", "email")

INBOUND_CLAIM_TYPE_MAP = {
    "sub": "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/nameidentifier",
    "name": "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/name",
    "given_name": "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/givenname",
    "family_name": "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/surname",
    "email": "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/emailaddress",
    "role": "http://schemas.microsoft.com/ws/2008/06/identity/claims/role",
    "amr": "http://schemas.microsoft.com/claims/authnmethodsreferences",
    "auth_time": "http://schemas.microsoft.com/ws/2008/06/identity/claims/authenticationinstant",
}

SAVED_TOKEN_KEYS = ("access_token", "id_token", "refresh_token", "token_type", "expires_at")


@dataclass(frozen=True)
class AuthenticationOptions:
    client_id: str
    authority: str
    default_scheme: str = "Cookies"
    challenge_scheme: str = "oidc"
    response_type: str = "code"
    scopes: tuple[str, ...] = ("openid", "profile", "verification")
    claim_actions: dict[str, str] = field(default_factory=lambda: {"email_verified": "email_verified"})
    get_claims_from_userinfo: bool = True
    save_tokens: bool = True
    map_inbound_claims: bool = False

    @property
    def metadata_url(self) -> str:
        return f"{self.authority.rstrip('/')}/.well-known/openid-configuration"

    @classmethod
    def from_config(cls, config: IdentityProviderConfig, startup: StartupOptions) -> "AuthenticationOptions":
        return cls(
            client_id=config.client_id,
            authority=config.address,
            map_inbound_claims=startup.map_inbound_claims,
        )


def map_claims(
    id_claims: dict[str, Any],
    userinfo: dict[str, Any] | None,
    options: AuthenticationOptions,
) -> dict[str, Any]:
    """
    Build the local claim set from the ID token and the userinfo payload.

    Protocol-only claims are dropped. Standard userinfo keys and the
    configured claim actions are copied from the userinfo payload. Claim
    names keep their wire form unless ``map_inbound_claims`` is set.
    """
    claims = {key: value for key, value in id_claims.items() if key not in PROTOCOL_CLAIMS}

    if userinfo:
        for key in USERINFO_JSON_KEYS:
            if key in userinfo:
                claims[key] = userinfo[key]
        for claim_type, json_key in options.claim_actions.items():
            if json_key in userinfo:
                claims[claim_type] = userinfo[json_key]

    if options.map_inbound_claims:
        claims = {INBOUND_CLAIM_TYPE_MAP.get(key, key): value for key, value in claims.items()}

    return claims


def saved_tokens(token: dict[str, Any]) -> dict[str, Any]:
    return {key: token[key] for key in SAVED_TOKEN_KEYS if key in token}


def safe_return_url(value: str | None) -> str:
    """Only local absolute paths are allowed as post-login targets."""
    if not value or not value.startswith("/") or value.startswith("//") or "\\" in value:
        return "/"
    return value


class SessionAuthBackend(AuthenticationBackend):
    """Resolves the principal from the cookie session."""

    async def authenticate(self, conn: HTTPConnection):
        user = conn.session.get("user")
        if not user:
            return None
        display_name = user.get("name") or user.get("sub") or ""
        return AuthCredentials(["authenticated"]), SimpleUser(display_name)


def require_user(request: Request) -> dict[str, Any]:
    """
    Dependency for routes that need an authenticated principal.

    Anonymous requests are redirected to the challenge endpoint.
    """
    if not request.user.is_authenticated:
        target = request.url.path
        if request.url.query:
            target = f"{target}?{request.url.query}"
        raise HTTPException(
            status_code=302,
            headers={"Location": f"/login?returnUrl={quote(target, safe='')}"},
        )
    return request.session["user"]


router = APIRouter(tags=["Authentication"])


@router.get("/login", include_in_schema=False)
async def login(request: Request, return_url: str = Query("/", alias="returnUrl")):
    """Challenge: redirect to the identity provider."""
    client = request.app.state.oidc_client
    request.session["return_url"] = safe_return_url(return_url)
    redirect_uri = request.url_for(CALLBACK_ROUTE)
    return await client.authorize_redirect(request, str(redirect_uri))


@router.get("/signin-oidc", name=CALLBACK_ROUTE, include_in_schema=False)
async def signin_oidc(request: Request) -> RedirectResponse:
    """Complete the authorization-code flow and sign the user in."""
    client = request.app.state.oidc_client
    options: AuthenticationOptions = request.app.state.auth_options

    token = await client.authorize_access_token(request)
    id_claims = dict(token.get("userinfo") or {})

    userinfo = None
    if options.get_claims_from_userinfo:
        userinfo = dict(await client.userinfo(token=token))

    user = map_claims(id_claims, userinfo, options)
    request.session["user"] = user
    if options.save_tokens:
        request.session["tokens"] = saved_tokens(token)

    logger.info("User %s signed in", user.get("sub", "<unknown>"))
    return RedirectResponse(request.session.pop("return_url", "/"), status_code=302)


@router.get("/signout", include_in_schema=False)
async def signout(request: Request) -> RedirectResponse:
    request.session.clear()
    return RedirectResponse("/", status_code=302)


def session_secret(config: IdentityProviderConfig, secrets_provider: SecretProvider) -> str:
    if config.cookie_secret_file:
        return secrets_provider.resolve(config.cookie_secret_file)
    logger.warning("No cookie secret configured; sessions will not survive a restart.")
    return secrets.token_urlsafe(32)


def configure_authentication(
    app: FastAPI,
    config: IdentityProviderConfig,
    secrets_provider: SecretProvider,
    options: AuthenticationOptions,
) -> OAuth:
    """
    Register the OIDC client and session settings on *app*.

    Raises:
        SecretResolutionError: If the client secret cannot be read.
    """
    client_secret = secrets_provider.resolve(config.client_secret_file)

    oauth = OAuth()
    oauth.register(
        name=options.challenge_scheme,
        client_id=options.client_id,
        client_secret=client_secret,
        server_metadata_url=options.metadata_url,
        client_kwargs={
            "scope": " ".join(options.scopes),
            "response_type": options.response_type,
            "code_challenge_method": "S256",
        },
    )

    app.state.oauth = oauth
    app.state.oidc_client = oauth.create_client(options.challenge_scheme)
    app.state.auth_options = options
    app.state.session_secret = session_secret(config, secrets_provider)

    logger.info("OIDC authentication configured against %s", options.authority)
    return oauth
