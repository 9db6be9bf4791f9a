"""
Financial information types and their summary classes
"""

# FI types (as used in upstream endpoint families)
FI_TYPE_DEPOSIT = "DEPOSIT"
FI_TYPE_TERM_DEPOSIT = "TERM_DEPOSIT"
FI_TYPE_RECURRING_DEPOSIT = "RECURRING_DEPOSIT"
FI_TYPE_MUTUAL_FUNDS = "MUTUAL_FUNDS"
FI_TYPE_EQUITIES = "EQUITIES"
FI_TYPE_ETF = "ETF"
FI_TYPE_NPS = "NPS"

FI_TYPES = (
    FI_TYPE_DEPOSIT,
    FI_TYPE_TERM_DEPOSIT,
    FI_TYPE_RECURRING_DEPOSIT,
    FI_TYPE_MUTUAL_FUNDS,
    FI_TYPE_EQUITIES,
    FI_TYPE_ETF,
    FI_TYPE_NPS,
)

# Investment-style types share one summary table
INVESTMENT_FI_TYPES = (FI_TYPE_MUTUAL_FUNDS, FI_TYPE_EQUITIES, FI_TYPE_ETF, FI_TYPE_NPS)

# Snapshot breakdown column per FI type
SNAPSHOT_FIELD_BY_FI_TYPE = {
    FI_TYPE_DEPOSIT: "deposits_value",
    FI_TYPE_TERM_DEPOSIT: "term_deposits_value",
    FI_TYPE_RECURRING_DEPOSIT: "recurring_deposits_value",
    FI_TYPE_MUTUAL_FUNDS: "mutual_funds_value",
    FI_TYPE_EQUITIES: "equities_value",
    FI_TYPE_ETF: "etf_value",
    FI_TYPE_NPS: "nps_value",
}


class UnknownFiTypeError(ValueError):
    """FI type not handled by the pipeline"""
    pass


def validate_fi_type(fi_type: str) -> str:
    """Normalize and validate an FI type string."""
    normalized = (fi_type or "").strip().upper()
    if normalized not in FI_TYPES:
        raise UnknownFiTypeError(
            f"Unknown FI type: {fi_type!r}. Use one of {', '.join(FI_TYPES)}"
        )
    return normalized
