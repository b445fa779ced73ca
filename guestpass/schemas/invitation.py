from datetime import date

from pydantic import BaseModel, EmailStr


class InvitationCreate(BaseModel):
    email: EmailStr
    name: str
    visitDate: date | None = None


class AcceptTermsRequest(BaseModel):
    invitationId: str
    termsAccepted: bool
    visitorAgreementAccepted: bool
