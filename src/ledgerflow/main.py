import os

import uvicorn

from ledgerflow.app import create_app

app = create_app()


def run() -> None:
    uvicorn.run(
        "ledgerflow.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_config=None,
    )


if __name__ == "__main__":
    run()
