import uvicorn
from dotenv import load_dotenv

load_dotenv()

from api.routes import app  # noqa: E402

# This is for local development; on Vercel the runtime serves `app` directly
if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
