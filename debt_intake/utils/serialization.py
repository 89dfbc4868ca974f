from datetime import date, datetime
from decimal import Decimal
from typing import Any

import pandas as pd


def json_safe(value: Any) -> Any:
    """
    Convert row values (pandas scalars, Decimals, dates) into JSON-serialisable
    structures so they can be stored in JSON columns and returned by the API.
    """
    if isinstance(value, dict):
        return {str(key): json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [json_safe(item) for item in value]
    if isinstance(value, Decimal):
        if value == value.to_integral():
            return int(value)
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode(errors="ignore")
    if isinstance(value, (int, float, str, bool)) or value is None:
        if isinstance(value, float) and pd.isna(value):
            return None
        return value
    if pd.api.types.is_scalar(value) and pd.isna(value):
        return None
    # numpy scalars expose item()
    if hasattr(value, "item"):
        return json_safe(value.item())
    return str(value)
