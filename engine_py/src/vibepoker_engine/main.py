"""FastAPI main application for the VibePoker backend"""

from .rules import load_config_from_env
from .ws.server import create_app

app = create_app(load_config_from_env())


@app.get("/")
async def root():
    return {"message": "VibePoker Room Engine", "version": "1.0.0"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
