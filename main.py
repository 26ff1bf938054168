# backend/main.py
# uvicorn main:app --host 0.0.0.0 --port 3300 --reload
import uvicorn

from services.feedback.main import app

__all__ = ["app"]


if __name__ == "__main__":
    uvicorn.run("services.feedback.main:app", host="0.0.0.0", port=3300)
