import hashlib
import logging

from fastapi.responses import JSONResponse

from models import AppConfig

logger = logging.getLogger(__name__)

AUTH_COOKIE_NAME = "vod_proxy_auth"
SALT = "vod_cache_proxy_salt"


def get_password_hash(password: str) -> str:
    return hashlib.sha256((password + SALT).encode()).hexdigest()


def needs_password(config: AppConfig) -> bool:
    return bool(config.access_password)


def handle_auth_check(config: AppConfig) -> JSONResponse:
    return JSONResponse({"needsPassword": needs_password(config)})


def handle_verify_password(config: AppConfig, submitted_password: str | None, client_ip: str) -> JSONResponse:
    if not needs_password(config):
        return JSONResponse({"success": True})

    expected = get_password_hash(config.access_password)
    if submitted_password and get_password_hash(submitted_password) == expected:
        response = JSONResponse({"success": True, "token": expected})
        response.set_cookie(
            key=AUTH_COOKIE_NAME,
            value=expected,
            httponly=True,
            max_age=86400 * 30,  # 30 days
            path='/',
            samesite='lax'
        )
        logger.info(f"Password correct for {client_ip}. Setting auth cookie.")
        return response

    logger.warning(f"Incorrect password submitted from {client_ip}.")
    return JSONResponse({"success": False})
