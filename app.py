from __future__ import annotations

import logging
import os

from botdesk.app_factory import create_app

app = create_app()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "5100")), debug=False)
