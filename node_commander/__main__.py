"""Run the daemon: python -m node_commander"""

import uvicorn

from .config import NODE_HOST, NODE_PORT
from .main import configure_logging, create_app


def main():
    configure_logging()
    uvicorn.run(create_app(), host=NODE_HOST, port=NODE_PORT, log_config=None)


if __name__ == "__main__":
    main()
