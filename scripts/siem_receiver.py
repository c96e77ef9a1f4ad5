from __future__ import annotations

import uvicorn

from siemrelay.apps.siem_receiver.app import create_app, load_receiver_settings


def main() -> None:
    # Run the reference collector with env-driven settings for local end-to-end checks.
    settings = load_receiver_settings()
    app = create_app(settings=settings)
    uvicorn.run(app, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
