import hmac

from fastapi import APIRouter, Depends, Header, HTTPException

from config.env import CRON_API_KEY
from database import get_db
from workers.order_timeout_worker import sweep_timed_out_orders
from workers.return_window_worker import complete_expired_return_windows

router = APIRouter(prefix="/cron", tags=["Cron"])


def require_cron_key(x_api_key: str | None = Header(None)):
    if not CRON_API_KEY:
        raise HTTPException(500, "Cron API key not configured")
    if not x_api_key or not hmac.compare_digest(x_api_key, CRON_API_KEY):
        raise HTTPException(401, "Unauthorized")


@router.get("/check-order-timeouts", dependencies=[Depends(require_cron_key)])
async def check_order_timeouts(db=Depends(get_db)):
    cancelled = await sweep_timed_out_orders(db)
    return {"message": "Order timeout check completed", "cancelled": cancelled}


@router.get("/update-return-windows", dependencies=[Depends(require_cron_key)])
async def update_return_windows(db=Depends(get_db)):
    result = await complete_expired_return_windows(db)
    return {"message": "Return windows updated", **result}
