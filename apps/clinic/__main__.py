"""
Run the clinic scheduling API with uvicorn.

Example:
  CLINIC_RELOAD=true python -m apps.clinic
"""
import os

import uvicorn


def main() -> None:
    reload = os.getenv("CLINIC_RELOAD", "false").lower() == "true"
    host = os.getenv("CLINIC_HOST", "0.0.0.0")
    port = int(os.getenv("CLINIC_PORT", "8000"))
    uvicorn.run(
        "apps.clinic.app.main:app",
        host=host,
        port=port,
        reload=reload,
        reload_dirs=["apps"] if reload else None,
    )


if __name__ == "__main__":
    main()
