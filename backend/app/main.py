from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from app.core.config import get_settings
from app.core.database import engine, Base
from app import models  # ensure models are registered with SQLAlchemy
from app.routers import auth, sharing, clients
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("uvicorn.error")

settings = get_settings()

app = FastAPI(
    title="Client Sharing API",
    description="Client records shared between users through secure share codes",
    version="0.1.0"
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.middleware("http")
async def log_requests(request, call_next):
    logger.info(f"{request.method} {request.url.path}")
    try:
        response = await call_next(request)
        logger.info(f"Response status: {response.status_code}")
        return response
    except Exception as e:
        logger.exception(f"Unhandled exception: {type(e).__name__}")
        return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})

@app.on_event("startup")
async def startup():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

app.include_router(auth.router)
# /clients/share must be registered before /clients/{client_id}
app.include_router(sharing.router)
app.include_router(clients.router)

@app.get("/")
async def root():
    return {"message": "Welcome to Client Sharing API"}

@app.get("/health")
async def health_check():
    return {"status": "ok"}
