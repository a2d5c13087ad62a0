from fastapi import FastAPI

from einvoice import __version__
from einvoice.config import load_settings
from einvoice.log import configure_logging
from routers import invoices

settings = load_settings()
configure_logging(settings)

app = FastAPI(
    title="KSA E-Invoice",
    description="Hashing, signature verification and QR tools for ZATCA e-invoices",
    version=__version__,
    debug=settings.debug_enabled,
)

# Include routers
app.include_router(invoices.router, prefix="/invoices", tags=["Invoices"])


@app.get("/")
async def root():
    return {"message": "KSA e-invoicing service"}
