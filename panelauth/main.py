import logging

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from panelauth.auth.models import Base
from panelauth.core.config import CORS_ORIGINS, LOG_LEVEL, SITE_NAME
from panelauth.core.responses import install_exception_handlers, ok
from panelauth.database.database import engine
from panelauth.routers import auth, users

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

app = FastAPI(title=f"{SITE_NAME} auth")

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
install_exception_handlers(app)

# Create database tables
Base.metadata.create_all(bind=engine)

# Include routers
app.include_router(auth.router)
app.include_router(users.router)


# Silence Chrome devtools probe noise
@app.get("/.well-known/appspecific/com.chrome.devtools.json")
def chrome_probe():
    return Response(status_code=204)


@app.get("/api/health")
async def health():
    return ok({"status": "ok"})
