import logging

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI

try:
    from backend import app_context
    from backend.app.routes.billing import router as billing_router
    from backend.app.routes.billing import webhook_router as billing_webhook_router
    from backend.app.services.billing import get_billing_config
except ModuleNotFoundError as exc:
    if exc.name != "backend":
        raise
    import app_context  # type: ignore[no-redef]
    from app.routes.billing import router as billing_router  # type: ignore[no-redef]
    from app.routes.billing import webhook_router as billing_webhook_router  # type: ignore[no-redef]
    from app.services.billing import get_billing_config  # type: ignore[no-redef]


load_dotenv()

logger = logging.getLogger("billing")

DB_CFG = get_billing_config().db_settings()


def get_conn():
    return psycopg2.connect(**DB_CFG)


app_context.configure(get_conn=get_conn)

app = FastAPI(title="Billing Reconciliation API")

app.include_router(billing_router)
app.include_router(billing_webhook_router)


@app.on_event("startup")
async def log_gateway_mode() -> None:
    config = get_billing_config()
    logger.info(
        "Billing API started gateway_mode=%s payments_environment=%s",
        config.gateway_mode,
        config.payments_environment,
    )
