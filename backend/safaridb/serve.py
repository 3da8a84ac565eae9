import logging
import os
from typing import Dict, Optional

import uvicorn

logger = logging.getLogger(__name__)

TRUTHY = {"1", "true", "yes", "on"}


def _ssl_options() -> Dict[str, Optional[str]]:
    certfile = os.getenv("SSL_CERTFILE")
    keyfile = os.getenv("SSL_KEYFILE")

    if not certfile and not keyfile:
        return {}
    if not (certfile and keyfile):
        raise RuntimeError("SSL_CERTFILE and SSL_KEYFILE must be set together")

    options: Dict[str, Optional[str]] = {
        "ssl_certfile": certfile,
        "ssl_keyfile": keyfile,
    }
    keyfile_password = os.getenv("SSL_KEYFILE_PASSWORD")
    if keyfile_password:
        options["ssl_keyfile_password"] = keyfile_password
    return options


def _workers() -> int:
    try:
        workers = max(int(os.getenv("WEB_CONCURRENCY", "1")), 1)
    except ValueError:
        workers = 1
    if workers > 1:
        # Rate limit buckets and the lockout sweeper live in each worker.
        logger.warning(
            "Starting %s workers: each keeps its own login rate limit buckets "
            "and runs its own lockout sweeper",
            workers,
        )
    return workers


def main() -> None:
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    reload_enabled = os.getenv("RELOAD", "false").lower() in TRUTHY
    log_level = os.getenv("LOG_LEVEL", "info")
    # Client addresses are logged with login rejections, so only trust
    # forwarding headers from known proxies.
    forwarded_allow_ips = os.getenv("FORWARDED_ALLOW_IPS", "127.0.0.1")

    uvicorn.run(
        "safaridb.main:app",
        host=host,
        port=port,
        reload=reload_enabled,
        workers=1 if reload_enabled else _workers(),
        log_level=log_level,
        proxy_headers=True,
        forwarded_allow_ips=forwarded_allow_ips,
        **_ssl_options(),
    )


if __name__ == "__main__":
    main()
