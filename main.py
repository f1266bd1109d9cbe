import logging

import uvicorn
from dotenv import load_dotenv

from scan4care.services.analyze_service import create_app
from scan4care.shared.config import load_config


# Local .env first, so everything below sees the same environment.
load_dotenv()
CONFIG = load_config()

logging.basicConfig(
    level=CONFIG.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app(CONFIG)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=CONFIG.port)
