"""Flow-kind and spending-category inference for synchronized transactions.

Decides whether a transaction is money in (income), money out (expense) or an
internal movement between the client's own accounts (transfer), and for
expenses picks a reporting category from a static keyword table.

Everything here is a pure function of the transaction and its account type.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from txnsync.models.transaction import Transaction


class FlowKind(Enum):
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"


class Category(Enum):
    """Reporting categories. Values match the stored ``suggested_category``."""

    HOUSING = "housing"
    BILLS_AND_UTILITIES = "billAndUtilities"
    AUTO_AND_TRANSPORT = "autoAndTransport"
    INSURANCE = "insurance"
    LOAN_PAYMENT = "loanPayment"
    GROCERIES = "groceries"
    HEALTH_AND_FITNESS = "healthAndFitness"
    SHOPPING = "shopping"
    DINING_OUT = "diningOut"
    ENTERTAINMENT = "entertainment"
    TRAVEL = "travel"
    CHARITABLE_GIVING = "charitableGiving"
    FEES_AND_CHARGES = "feeAndCharges"
    BUSINESS = "business"
    KIDS = "kids"
    EDUCATION = "education"
    GIFT = "gift"
    MISC = "misc"
    UNCATEGORIZED = "uncategorized"
    INCOME = "income"
    TRANSFER = "transfer"


@dataclass(frozen=True)
class KeywordRule:
    """Matches when any ``any_of`` keyword, every ``all_of`` keyword, and no
    ``none_of`` keyword occur in the lowercased description."""

    category: Category
    any_of: tuple[str, ...]
    all_of: tuple[str, ...] = ()
    none_of: tuple[str, ...] = ()

    def matches(self, text: str) -> bool:
        if not any(keyword in text for keyword in self.any_of):
            return False
        if not all(keyword in text for keyword in self.all_of):
            return False
        return not any(keyword in text for keyword in self.none_of)


# Ordered: first matching rule wins.
EXPENSE_RULES: tuple[KeywordRule, ...] = (
    KeywordRule(Category.HOUSING, ("rent", "mortgage", "property tax")),
    KeywordRule(
        Category.BILLS_AND_UTILITIES,
        ("electric", "gas company", "water", "internet", "phone", "cable"),
    ),
    KeywordRule(Category.AUTO_AND_TRANSPORT, ("uber", "lyft", "parking")),
    KeywordRule(Category.AUTO_AND_TRANSPORT, ("gas",), none_of=("gas company",)),
    KeywordRule(Category.INSURANCE, ("insurance", "allstate", "geico")),
    KeywordRule(Category.LOAN_PAYMENT, ("payment", "pay"), all_of=("credit card",)),
    KeywordRule(Category.LOAN_PAYMENT, ("loan", "payment -")),
    KeywordRule(Category.GROCERIES, ("grocery", "supermarket")),
    KeywordRule(
        Category.HEALTH_AND_FITNESS, ("doctor", "pharmacy", "gym", "fitness")
    ),
    KeywordRule(
        Category.SHOPPING,
        ("amazon", "target", "sparkfun", "shop", "bicycle", "store"),
    ),
    KeywordRule(
        Category.DINING_OUT,
        ("restaurant", "mcdonald", "starbucks", "kfc", "kentucky fried"),
    ),
    KeywordRule(Category.ENTERTAINMENT, ("netflix", "spotify", "movie")),
    KeywordRule(Category.TRAVEL, ("airline", "hotel")),
    KeywordRule(Category.ENTERTAINMENT, ("climbing", "touchstone")),
    KeywordRule(Category.CHARITABLE_GIVING, ("church", "charity")),
    KeywordRule(
        Category.FEES_AND_CHARGES, ("fee", "charge", "overdraft", "intrst")
    ),
)

# Inflows regardless of sign or account type: payroll, payment processors
# paying out to the client, explicit deposits.
INFLOW_KEYWORDS: tuple[str, ...] = (
    "payroll",
    "paycheck",
    "direct dep",
    "electronic deposit",
    "stripe transfer",
    "square inc",
    "paypal transfer",
    "gusto",
)

# Peer-to-peer services count as income only when the money came in.
PEER_TRANSFER_KEYWORDS: tuple[str, ...] = ("zelle", "venmo", "cash app")

TRANSFER_PFC_PRIMARIES: tuple[str, ...] = (
    "transfer_in",
    "transfer_out",
    "loan_payment",
)


@dataclass(frozen=True)
class Inference:
    flow_kind: FlowKind
    category: Category

    @property
    def suggested_category(self) -> str:
        return self.category.value


def describe(txn: Transaction) -> str:
    """Lowercased searchable description built from name and merchant."""
    parts = [txn.get("name") or "", txn.get("merchant_name") or ""]
    return " ".join(part for part in parts if part).lower()


def sign_flow_kind(amount: float, account_type: str | None) -> FlowKind:
    """Account-type sign rule.

    - credit: every transaction is an expense (purchases and payments alike)
    - depository, loan, unknown: positive is income, otherwise expense
    """
    if (account_type or "").lower() == "credit":
        return FlowKind.EXPENSE
    return FlowKind.INCOME if amount > 0 else FlowKind.EXPENSE


def is_transfer(txn: Transaction, description: str | None = None) -> bool:
    """True when the transaction moves money between the client's own accounts."""
    text = description if description is not None else describe(txn)

    if "credit card" in text and "payment" in text:
        return True
    if "cd deposit" in text or "cd.deposit" in text:
        return True
    if "deposit" in text and "initial" in text:
        return True
    if "transfer" in text and ("account" in text or "between" in text):
        return True

    pfc = txn.get("personal_finance_category") or {}
    primary = (pfc.get("primary") or "").lower()
    return any(marker in primary for marker in TRANSFER_PFC_PRIMARIES)


def is_forced_inflow(txn: Transaction, description: str | None = None) -> bool:
    """Keyword overrides that make a transaction income.

    Peer-transfer services only qualify when the amount is an inflow, which
    the provider reports as a negative amount.
    """
    text = description if description is not None else describe(txn)
    if any(keyword in text for keyword in INFLOW_KEYWORDS):
        return True
    return txn["amount"] < 0 and any(k in text for k in PEER_TRANSFER_KEYWORDS)


def expense_category(description: str) -> Category:
    for rule in EXPENSE_RULES:
        if rule.matches(description):
            return rule.category
    return Category.UNCATEGORIZED


def infer_category(txn: Transaction, account_type: str | None) -> Inference:
    """Classify a transaction's flow kind and suggest a category.

    Args:
        txn: Provider transaction record
        account_type: Type of the owning account (depository, credit, loan,
            ...) or None when unknown

    Returns:
        Inference with the flow kind and suggested category

    Precedence: transfer override, then inflow keyword override, then the
    account-type sign rule. Only expenses get a keyword-table category.
    """
    description = describe(txn)

    if is_transfer(txn, description):
        return Inference(FlowKind.TRANSFER, Category.TRANSFER)
    if is_forced_inflow(txn, description):
        return Inference(FlowKind.INCOME, Category.INCOME)

    flow_kind = sign_flow_kind(txn["amount"], account_type)
    if flow_kind is FlowKind.INCOME:
        return Inference(FlowKind.INCOME, Category.INCOME)
    return Inference(FlowKind.EXPENSE, expense_category(description))


def effective_category(
    user_category: str | None, suggested_category: str | None
) -> str:
    """A human-assigned category always wins over the computed suggestion."""
    return user_category or suggested_category or Category.UNCATEGORIZED.value
