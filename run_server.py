"""Flask server that stays alive"""

import sys

from plantcare import create_app
from plantcare.config import load_config

if sys.platform == "win32":
    sys.stdout.reconfigure(encoding="utf-8")


def main() -> None:
    config = load_config()
    app = create_app(start_runtime=True)

    print(f"Server starting on http://{config.api_host}:{config.api_port}")
    print("Press Ctrl+C to stop\n")

    try:
        app.run(host=config.api_host, port=config.api_port, debug=False, use_reloader=False)
    except KeyboardInterrupt:
        print("\nServer stopped by user")


if __name__ == "__main__":
    main()
