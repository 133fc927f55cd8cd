from fastapi import FastAPI

from shopline_payments.config import get_settings
from shopline_payments.database import Base, engine
from shopline_payments.logging_config import configure_logging
from shopline_payments.routes import router

settings = get_settings()
configure_logging(settings.log_level, settings.environment)

app = FastAPI(title="Shopline Payments Sync", debug=settings.debug)

app.include_router(router)

Base.metadata.create_all(bind=engine)
