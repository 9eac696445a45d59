from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tailors_payments.database import Base, engine
from tailors_payments.errors import PaymentError
from tailors_payments.logging_config import configure_logging
from tailors_payments.order_routes import router as order_router
from tailors_payments.refund_routes import router as refund_router
from tailors_payments.responses import failure
from tailors_payments.routes import router as payment_router

configure_logging()

app = FastAPI(title="Tailors Payments Service")

app.include_router(order_router)
app.include_router(payment_router)
app.include_router(refund_router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    return JSONResponse(status_code=exc.status_code, content=failure(exc.message))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content=failure(str(exc.detail)))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"message": error["msg"], "field": ".".join(str(part) for part in error["loc"][1:])}
        for error in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"success": False, "errors": errors})
