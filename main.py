import os

import uvicorn

from taskboard.config import Settings
from taskboard.main import create_app


def run() -> None:
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "8000"))
    app = create_app(Settings.from_env())
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run()
