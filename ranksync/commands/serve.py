import sys

import uvicorn

from ranksync.config import settings

APPS = {
    "coordinator": "ranksync.main:app",
    "node": "ranksync.node:app",
}


def serve(role: str = "coordinator", host: str = "0.0.0.0") -> None:
    uvicorn.run(APPS[role], host=host, port=settings.webhook_port)


if __name__ == "__main__":
    role = sys.argv[1] if len(sys.argv) > 1 else "coordinator"
    if role not in APPS:
        raise SystemExit(f"unknown role {role!r}; expected one of {', '.join(APPS)}")
    serve(role)
