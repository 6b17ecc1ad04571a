#!/usr/bin/env python3

import logging
import os
import sys
from council import create_app

if __name__ == "__main__":
    logging.basicConfig(
        level=logging.DEBUG if os.environ.get("COUNCIL_DEBUG_RUNS") else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = create_app()

    host = os.environ.get("HOST", "127.0.0.1")
    port = int(os.environ.get("PORT", 5000))
    debug = os.environ.get("FLASK_ENV") == "development"

    print(f"Starting council on http://{host}:{port}")
    print("Start runs with POST /api/runs and follow them at /api/runs/<run_id>/events")
    print("Press CTRL+C to stop the server")

    try:
        # The reloader would start a second engine loop
        app.run(host=host, port=port, debug=debug, use_reloader=False, threaded=True)
    except KeyboardInterrupt:
        print("\nShutting down council...")
        sys.exit(0)
