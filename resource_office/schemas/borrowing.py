from datetime import date
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class BorrowLineDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemID: int
    quantity: int = 1


class BorrowRequestDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    borrowerRef: str
    expectedReturnDate: date
    purpose: str
    location: Optional[str] = None
    notes: Optional[str] = None
    lines: List[BorrowLineDto] = []


class ExtendReturnDateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    newReturnDate: date
    reason: Optional[str] = None
    requestedBy: Optional[str] = None


class ReturnSubmissionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    lineIDs: List[int] = []
    notes: Optional[str] = None
    borrowerRef: Optional[str] = None


class ResolveVerificationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    outcome: str
    resolverRef: Optional[str] = None
    conditionNotes: Optional[str] = None


class StatusCheckRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    verificationIDs: List[int] = []
