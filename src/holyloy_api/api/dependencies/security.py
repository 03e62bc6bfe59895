from fastapi import Header, HTTPException, status

from holyloy_api.core.settings import settings


def _check_api_key(expected: str, provided: str) -> None:
    if not expected:
        return

    if provided != expected:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )


async def require_admin_api_key(x_api_key: str = Header("", alias="X-API-Key")) -> None:
    _check_api_key(settings.admin_api_key, x_api_key)


async def require_observability_api_key(x_api_key: str = Header("", alias="X-API-Key")) -> None:
    _check_api_key(settings.observability_api_key or settings.admin_api_key, x_api_key)


async def require_rewards_api_key(x_api_key: str = Header("", alias="X-API-Key")) -> None:
    _check_api_key(settings.rewards_api_key, x_api_key)
