from pydantic import BaseModel


class CheckoutSessionIn(BaseModel):
    buyer_id: str
    price_id: str
    success_url: str
    cancel_url: str


class CheckoutSessionOut(BaseModel):
    url: str | None
    session_id: str
