from dotenv import load_dotenv

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .chat import routers as chat_router

from .core.config import get_settings
from .core.middleware import logging_middleware
from .utils.logging_config import setup_logging

load_dotenv()

settings = get_settings()
setup_logging(settings.log_level, settings.log_format)


app = FastAPI(title="Marketplace Messaging")
app.include_router(chat_router.router, prefix="/chat", tags=["Chat"])


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.middleware("http")(logging_middleware)

