from __future__ import annotations

import datetime as _dt
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_validator

Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]
Quantity = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


def _strip(value: Any) -> Any:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return value


# === Work completions =======================================================

class WorkCompletionUpsert(BaseModel):
    estimateItemId: str
    completed: bool = False
    actualQuantity: Quantity = Decimal("0")
    actualTotal: Optional[Money] = None
    notes: Optional[str] = None

    @field_validator("estimateItemId", mode="before")
    @classmethod
    def _strip_item_id(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("notes", mode="before")
    @classmethod
    def _strip_notes(cls, value: Any) -> Any:
        return _strip(value)

    @field_validator("actualQuantity", mode="before")
    @classmethod
    def _default_quantity(cls, value: Any) -> Any:
        if value in (None, ""):
            return Decimal("0")
        return value


class WorkCompletionBatch(BaseModel):
    completions: List[WorkCompletionUpsert] = Field(default_factory=list)


class WorkCompletion(BaseModel):
    id: str
    estimateId: str
    estimateItemId: str
    completed: bool
    actualQuantity: Quantity
    actualTotal: Money
    completionDate: Optional[datetime] = None
    notes: Optional[str] = None
    lastActId: Optional[str] = None
    lastActNumber: Optional[str] = None
    lastActType: Optional[str] = None
    createdAt: datetime
    updatedAt: datetime


class WorkCompletionList(BaseModel):
    completions: List[WorkCompletion]
    count: int


class CompletionImportError(BaseModel):
    workName: Optional[str] = None
    line: Optional[int] = None
    error: str


class CompletionImportResult(BaseModel):
    message: str = "Импорт завершен"
    successCount: int
    errorCount: int
    errors: List[CompletionImportError] = Field(default_factory=list)


# === Acts ===================================================================

class ActGenerateRequest(BaseModel):
    estimateId: Optional[str] = None
    projectId: Optional[str] = None
    actType: Optional[str] = None
    periodFrom: Optional[date] = None
    periodTo: Optional[date] = None
    actDate: Optional[date] = None

    @field_validator("estimateId", "projectId", "actType", mode="before")
    @classmethod
    def _strip_strings(cls, value: Any) -> Any:
        return _strip(value)


class ActSummary(BaseModel):
    id: str
    actNumber: str
    actType: str
    actDate: date
    periodFrom: Optional[date] = None
    periodTo: Optional[date] = None
    totalAmount: Money
    totalQuantity: Quantity
    workCount: int
    status: str
    createdAt: datetime


class ActGenerateResponse(BaseModel):
    message: str
    clientAct: Optional[ActSummary] = None
    specialistAct: Optional[ActSummary] = None
    failures: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


class ActList(BaseModel):
    acts: List[ActSummary]
    count: int


class ActItem(BaseModel):
    id: str
    estimateItemId: Optional[str] = None
    workCode: Optional[str] = None
    workName: str
    unit: Optional[str] = None
    section: Optional[str] = None
    subsection: Optional[str] = None
    plannedQuantity: Quantity
    actualQuantity: Quantity
    unitPrice: Money
    totalPrice: Money
    positionNumber: int
    lineNumber: int


class ActSection(BaseModel):
    section: str
    items: List[ActItem]
    sectionTotal: Money


class SignatoryIn(BaseModel):
    role: Optional[str] = None
    fullName: Optional[str] = None
    position: Optional[str] = None
    basisDocument: Optional[str] = None

    @field_validator("role", "fullName", "position", "basisDocument", mode="before")
    @classmethod
    def _strip_strings(cls, value: Any) -> Any:
        return _strip(value)


class Signatory(BaseModel):
    role: str
    fullName: str
    position: Optional[str] = None
    basisDocument: Optional[str] = None


class SignatoriesUpdate(BaseModel):
    signatories: List[SignatoryIn] = Field(default_factory=list)


class ActDetail(ActSummary):
    estimateId: str
    projectId: Optional[str] = None
    notes: Optional[str] = None
    formType: str
    contractorName: Optional[str] = None
    customerName: Optional[str] = None
    contractNumber: Optional[str] = None
    contractDate: Optional[date] = None
    contractSubject: Optional[str] = None
    constructionObject: Optional[str] = None
    constructionAddress: Optional[str] = None
    constructionOkpd: Optional[str] = None
    items: List[ActItem] = Field(default_factory=list)
    groupedItems: List[ActSection] = Field(default_factory=list)
    signatories: List[Signatory] = Field(default_factory=list)


class ActStatusUpdate(BaseModel):
    status: Optional[str] = None


class ActDetailsUpdate(BaseModel):
    contractorName: Optional[str] = None
    contractorInn: Optional[str] = None
    contractorKpp: Optional[str] = None
    contractorOgrn: Optional[str] = None
    contractorAddress: Optional[str] = None
    customerName: Optional[str] = None
    customerInn: Optional[str] = None
    customerKpp: Optional[str] = None
    customerOgrn: Optional[str] = None
    customerAddress: Optional[str] = None
    contractNumber: Optional[str] = None
    contractDate: Optional[date] = None
    contractSubject: Optional[str] = None
    constructionObject: Optional[str] = None
    constructionAddress: Optional[str] = None
    constructionOkpd: Optional[str] = None
    formType: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("contractDate", mode="before")
    @classmethod
    def _normalize_date(cls, value: Any) -> Any:
        if value in ("", "null"):
            return None
        return value


# === Form payloads ==========================================================

class Organization(BaseModel):
    name: str = ""
    inn: str = ""
    kpp: str = ""
    ogrn: str = ""
    address: str = ""


class ContractInfo(BaseModel):
    number: str = ""
    date: Optional[_dt.date] = None
    subject: str = ""


class ConstructionObject(BaseModel):
    name: str = ""
    address: str = ""
    okpd: str = ""


class ReportingPeriod(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: Optional[date] = Field(default=None, alias="from")
    to: Optional[date] = None


class Ks2Work(BaseModel):
    lineNumber: int
    positionNumber: int
    workCode: str = ""
    workName: str
    unit: str = ""
    section: Optional[str] = None
    quantity: Quantity
    unitPrice: Money
    totalPrice: Money


class Ks2Totals(BaseModel):
    amount: Money
    quantity: Quantity
    workCount: int


class Ks2Form(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    formType: str = "КС-2"
    okud: str = "0322005"
    actId: str
    actNumber: str
    actDate: date
    actType: str
    contractor: Organization
    customer: Organization
    investor: Organization = Field(default_factory=Organization)
    contract: ContractInfo
    constructionObject: ConstructionObject
    period: ReportingPeriod
    works: List[Ks2Work]
    totals: Ks2Totals
    signatories: List[Signatory]
    notes: str = ""


class Ks3Work(BaseModel):
    lineNumber: int
    workCode: str = ""
    workName: str
    unit: str = ""
    amountYtd: Money
    amountPriorPeriods: Money
    amountCurrent: Money


class Ks3Totals(BaseModel):
    amountYtd: Money
    amountPriorPeriods: Money
    amountCurrent: Money


class Ks3Form(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    formType: str = "КС-3"
    okud: str = "0322001"
    actId: str
    actNumber: str
    actDate: date
    actType: str
    reportingYear: int
    contractor: Organization
    customer: Organization
    investor: Organization = Field(default_factory=Organization)
    contract: ContractInfo
    constructionObject: ConstructionObject
    period: ReportingPeriod
    works: List[Ks3Work]
    totals: Ks3Totals
    signatories: List[Signatory]
    notes: str = ""
