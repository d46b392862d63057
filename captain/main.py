from __future__ import annotations

import os

import uvicorn


def main() -> None:
    host = os.getenv("CAPTAIN_HOST", "127.0.0.1")
    port = int(os.getenv("CAPTAIN_PORT", "8080"))
    uvicorn.run("captain.web_app:create_app", factory=True, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
