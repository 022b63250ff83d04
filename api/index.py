"""ASGI entrypoint for deployment platforms and local runs"""
import sys
from pathlib import Path

# Add project root to path for imports when run from a checkout
root_dir = Path(__file__).parent.parent.absolute()
if str(root_dir) not in sys.path:
    sys.path.insert(0, str(root_dir))

from careflow.api.main import app
from careflow.config import settings

__all__ = ["app"]

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000, log_level=settings.LOG_LEVEL.lower())
