from pydantic import BaseModel


class OnboardingLinkIn(BaseModel):
    refresh_url: str
    return_url: str
