from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, Field

OrderType = Literal["Purchase", "Redemption", "Switch"]
RedemptionType = Literal["Standard", "Instant", "Full"]
PolicySeverity = Literal["error", "warning", "note"]
TransactionModeType = Literal["Physical", "Email", "Telephone", "Online", "Automated"]

T = TypeVar("T")


class SchemeInfo(BaseModel):
    scheme_id: str = Field(description="Scheme identifier.", examples=["sch_eq_01"])
    name: str = Field(description="Scheme name.", examples=["Lotus Bluechip Equity Fund"])
    nav: Optional[Decimal] = Field(default=None, description="Latest NAV.", examples=["25.50"])
    previous_nav: Optional[Decimal] = Field(default=None, examples=["25.90"])
    min_investment: Optional[Decimal] = Field(default=None, ge=0, examples=["500"])
    max_investment: Optional[Decimal] = Field(default=None, gt=0, examples=["10000000"])
    category: str = Field(default="Other", examples=["Equity"])
    risk_level: str = Field(default="Moderate", examples=["High"])
    is_whitelisted: bool = Field(default=True)


class CalculationResult(BaseModel, Generic[T]):
    success: bool = Field(description="Whether the calculation succeeded.", examples=[True])
    message: str = Field(examples=["Switch calculation completed"])
    data: Optional[T] = Field(default=None)
    errors: List[str] = Field(default_factory=list)


class TaxImplications(BaseModel):
    short_term_gain: Decimal = Field(default=Decimal("0"))
    long_term_gain: Decimal = Field(default=Decimal("0"))
    tax_amount: Decimal = Field(default=Decimal("0"))


class SwitchCalculation(BaseModel):
    source_scheme_id: str
    source_scheme_name: str = ""
    target_scheme_id: str
    target_scheme_name: str = ""
    source_units: Decimal
    source_nav: Decimal
    target_nav: Decimal
    gross_amount: Decimal
    exit_load_percent: Decimal
    exit_load_amount: Decimal
    net_amount: Decimal
    target_units: Decimal
    tax_implications: TaxImplications


class RedemptionCalculation(BaseModel):
    scheme_id: str
    scheme_name: str = ""
    redemption_type: RedemptionType
    units: Decimal
    nav: Decimal
    gross_amount: Decimal
    exit_load_percent: Decimal
    exit_load_amount: Decimal
    net_amount: Decimal
    tds_amount: Decimal
    final_amount: Decimal
    settlement_date: date


class PurchaseCalculation(BaseModel):
    scheme_id: str
    scheme_name: str = ""
    amount: Decimal
    nav: Decimal
    units: Decimal


class InstantRedemptionEligibility(BaseModel):
    eligible: bool
    reason: Optional[str] = None
    max_amount: Decimal
    available_amount: Optional[Decimal] = None


class SwitchCalculationRequest(BaseModel):
    source_scheme_id: str = Field(min_length=1, examples=["sch_eq_01"])
    target_scheme_id: str = Field(min_length=1, examples=["sch_debt_01"])
    amount: Optional[Decimal] = Field(default=None, examples=["100000"])
    units: Optional[Decimal] = Field(default=None)
    purchase_nav: Optional[Decimal] = Field(
        default=None, gt=0, description="Average cost NAV of the source holding."
    )
    holding_period_months: Optional[int] = Field(default=None, ge=0, examples=[18])


class RedemptionCalculationRequest(BaseModel):
    scheme_id: str = Field(min_length=1, examples=["sch_eq_01"])
    amount: Optional[Decimal] = Field(default=None, examples=["25000"])
    units: Optional[Decimal] = Field(default=None)
    redemption_type: RedemptionType = Field(default="Standard", examples=["Instant"])


class InstantEligibilityRequest(BaseModel):
    scheme_id: str = Field(min_length=1, examples=["sch_eq_01"])
    amount: Decimal = Field(examples=["60000"])


class OrderLine(BaseModel):
    scheme_id: str = Field(examples=["sch_eq_01"])
    amount: Decimal = Field(ge=0, examples=["10000"])
    transaction_type: OrderType = Field(default="Purchase")


class Nominee(BaseModel):
    name: str = Field(examples=["Asha"])
    date_of_birth: Optional[date] = Field(default=None, examples=["2015-04-01"])
    guardian_name: Optional[str] = Field(default=None)
    guardian_pan: Optional[str] = Field(default=None)
    guardian_relationship: Optional[str] = Field(default=None)


class TransactionMode(BaseModel):
    mode: TransactionModeType = Field(examples=["Telephone"])
    euin: Optional[str] = Field(default=None, examples=["E123456"])


class ClientProfile(BaseModel):
    client_id: str = Field(examples=["cl_001"])
    nominees: List[Nominee] = Field(default_factory=list)
    opt_out_of_nomination: bool = Field(default=False)
    risk_acknowledged: bool = Field(default=False)


class ValidationResult(BaseModel):
    is_valid: bool = True
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class ComplianceContext(BaseModel):
    order_lines: List[OrderLine] = Field(default_factory=list)
    schemes: Dict[str, SchemeInfo] = Field(default_factory=dict)
    nominees: List[Nominee] = Field(default_factory=list)
    opt_out_of_nomination: bool = False
    transaction_mode: Optional[TransactionMode] = None
    current_allocation: Optional[Dict[str, Decimal]] = None
    risk_acknowledged: bool = False
    as_of: date


class PolicyOutcome(BaseModel):
    severity: PolicySeverity
    message: str
    note: Optional[str] = None


class ComplianceOutcome(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    advisor_notes: List[str] = Field(default_factory=list)
    summary: str = ""


class ComplianceCheckRequest(BaseModel):
    order_lines: List[OrderLine] = Field(min_length=1)
    schemes: List[SchemeInfo] = Field(default_factory=list)
    nominees: List[Nominee] = Field(default_factory=list)
    opt_out_of_nomination: bool = False
    transaction_mode: Optional[TransactionMode] = None
    current_allocation: Optional[Dict[str, Decimal]] = None
    risk_acknowledged: bool = False
    as_of: Optional[date] = None


class FinalizedOrder(BaseModel):
    client_id: str
    order_type: OrderType
    scheme_id: str
    scheme_name: str = ""
    target_scheme_id: Optional[str] = None
    amount: Decimal
    units: Optional[Decimal] = None
    nav: Optional[Decimal] = None
    automation_type: str = Field(examples=["AutoInvest"])
    automation_id: str
    details: Dict[str, Any] = Field(default_factory=dict)


class SubmittedOrderRecord(FinalizedOrder):
    order_id: str = Field(examples=["ord_3f1a9c2b7d10"])
    submitted_at: datetime


class OrderHistoryResponse(BaseModel):
    items: List[SubmittedOrderRecord] = Field(default_factory=list)
