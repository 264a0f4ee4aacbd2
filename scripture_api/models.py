from typing import List, Optional
from pydantic import BaseModel


class AuthRegisterRequest(BaseModel):
    email: str
    password: str
    name: Optional[str] = None


class AuthLoginRequest(BaseModel):
    email: str
    password: str


class UserSummary(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None
    entitlement: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    user: UserSummary


class UsageInfo(BaseModel):
    questions_today: int
    total_questions: int
    can_ask: bool
    remaining: Optional[int] = None
    reset_at: Optional[str] = None


class AuthMeResponse(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None
    auth_provider: str
    entitlement: str
    entitlement_period_end: Optional[str] = None
    has_billing_customer: bool
    created_at: Optional[str] = None
    last_login: Optional[str] = None
    usage: UsageInfo


class ProfileUpdateRequest(BaseModel):
    name: str


class ProfileUpdateResponse(BaseModel):
    user_id: str
    name: str


class PasswordChangeRequest(BaseModel):
    current_password: str
    new_password: str


class PasswordChangeResponse(BaseModel):
    changed: bool


class AccountDeleteResponse(BaseModel):
    deleted: bool


class ChatTurn(BaseModel):
    role: str
    content: str


class ChatAskRequest(BaseModel):
    message: str
    history: List[ChatTurn] = []


class ChatAnswerResponse(BaseModel):
    response: str
    timestamp: str
    usage: UsageInfo


class PlanItem(BaseModel):
    plan_id: str
    name: str
    amount: int
    currency: str
    interval: str
    features: List[str]


class PlansResponse(BaseModel):
    plans: List[PlanItem]


class CheckoutSessionResponse(BaseModel):
    session_id: str
    url: Optional[str] = None


class PortalSessionResponse(BaseModel):
    url: str


class VerifySessionRequest(BaseModel):
    session_id: str


class VerifySessionResponse(BaseModel):
    activated: bool
    entitlement: str
    payment_status: str


class SyncSubscriptionResponse(BaseModel):
    entitlement: str
    changed: bool


class SubscriptionDetails(BaseModel):
    status: Optional[str] = None
    current_period_end: Optional[str] = None
    cancel_at_period_end: bool = False


class SubscriptionStatusResponse(BaseModel):
    entitlement: str
    entitlement_period_end: Optional[str] = None
    has_subscription: bool
    details: Optional[SubscriptionDetails] = None


class CancelSubscriptionResponse(BaseModel):
    cancel_at_period_end: bool
    current_period_end: Optional[str] = None


class WebhookResponse(BaseModel):
    received: bool


class HealthResponse(BaseModel):
    status: str
