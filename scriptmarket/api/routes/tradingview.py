from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from scriptmarket.api.deps import require_service_key
from scriptmarket.db.session import get_db
from scriptmarket.schemas.tradingview import TradingViewConnectIn, TradingViewUserIn
from scriptmarket.services.tradingview.client import TradingViewError
from scriptmarket.services.tradingview.service import TradingViewNotConnected, TradingViewService

router = APIRouter(prefix="/tradingview", tags=["tradingview"], dependencies=[Depends(require_service_key)])


@router.post("/connect")
def connect(payload: TradingViewConnectIn, db: Session = Depends(get_db)):
    try:
        profile = TradingViewService(db).connect(
            payload.user_id,
            payload.tradingview_username,
            payload.session_cookie,
            payload.signed_session_cookie,
        )
    except TradingViewNotConnected as e:
        raise HTTPException(status_code=404, detail=str(e))
    except TradingViewError as e:
        raise HTTPException(status_code=401, detail=f"TradingView connection failed: {e}")
    return {"connected": profile.is_tradingview_connected, "tradingview_username": profile.tradingview_username}


@router.post("/sync")
def sync(payload: TradingViewUserIn, db: Session = Depends(get_db)):
    try:
        count = TradingViewService(db).sync_scripts(payload.user_id)
    except TradingViewNotConnected as e:
        raise HTTPException(status_code=403, detail=str(e))
    except TradingViewError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"message": f"Sync complete. Found {count} scripts.", "count": count}


@router.post("/disconnect")
def disconnect(payload: TradingViewUserIn, db: Session = Depends(get_db)):
    try:
        return TradingViewService(db).disconnect(payload.user_id)
    except TradingViewNotConnected as e:
        raise HTTPException(status_code=404, detail=str(e))
