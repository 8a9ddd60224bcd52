from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
import logging

from pitstop.api import auth, bookings, goods_requests, inventory, invoices, jobs, leave_requests, users, vehicles
from pitstop.config import settings
from pitstop.database import Base, engine, get_db
from pitstop.errors import ServiceUnavailable, register_exception_handlers
from pitstop.services.email import EmailService
from pitstop.utils.rate_limiter import limiter, rate_limit_exceeded_handler

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)

app = FastAPI(title="PitStop API", version="1.0.0")

app.state.limiter = limiter
app.state.email_service = EmailService()
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
register_exception_handlers(app)

if not app.state.email_service.configured:
    logger.warning("SMTP is not configured. Verification and reset emails will not be sent.")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
)

# Include routers
app.include_router(auth.router, prefix="/api/auth", tags=["Authentication"])
app.include_router(users.router, prefix="/api/users", tags=["Users"])
app.include_router(vehicles.router, prefix="/api/vehicles", tags=["Vehicles"])
app.include_router(bookings.router, prefix="/api/bookings", tags=["Bookings"])
app.include_router(jobs.router, prefix="/api/jobs", tags=["Jobs"])
app.include_router(inventory.router, prefix="/api/inventory", tags=["Inventory"])
app.include_router(goods_requests.router, prefix="/api/goods-requests", tags=["Goods Requests"])
app.include_router(invoices.router, prefix="/api/invoices", tags=["Invoices"])
app.include_router(leave_requests.router, prefix="/api/leave-requests", tags=["Leave Requests"])


@app.get("/")
async def root():
    return {"message": "PitStop API is running"}


@app.get("/api/health")
async def health_check(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Health check failed: {str(e)}")
        raise ServiceUnavailable()
    return {
        "status": "healthy",
        "services": {
            "database": True,
            "email": app.state.email_service.configured,
        }
    }
