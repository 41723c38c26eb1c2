from pydantic import BaseModel, Field


class TradingViewConnectIn(BaseModel):
    user_id: str
    tradingview_username: str = Field(min_length=1)
    session_cookie: str = Field(min_length=1)
    signed_session_cookie: str = Field(min_length=1)


class TradingViewUserIn(BaseModel):
    user_id: str
