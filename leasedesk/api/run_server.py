import os

import uvicorn
from dotenv import load_dotenv

from leasedesk.api.settings import get_env_int


def main() -> None:
    load_dotenv()
    host = os.getenv("API_HOST", "0.0.0.0")
    port = get_env_int("API_PORT", 8080)
    uvicorn.run("leasedesk.api.app:app", host=host, port=port, log_config=None)


if __name__ == "__main__":
    main()
