from .errors import ConfigError


def validate_result(records):
    # Un reduce() en JQL devuelve solo el número de registros
    if isinstance(records, list) and records:
        first = records[0]
        if isinstance(first, (int, float)) and not isinstance(first, bool):
            raise ConfigError(f"Non-supported result {records[:5]}. Revise your JQL.")
        if not isinstance(first, dict):
            raise ConfigError(f"Resultado sin forma de registro: {first!r}. Revise your JQL.")
    return records


def validate_incremental_column(records, column: str, nested: bool = False):
    if not records:
        return records
    first = (records[0].get("properties") or {}) if nested else records[0]
    if column not in first:
        raise ConfigError(
            f"Missing Incremental Field ({column}) in the returned dataset. "
            "Specify the correct Incremental Field value."
        )
    return records


def validate_jql_script(script):
    if script is None or not str(script).strip():
        raise ConfigError("JQL script shouldn't be empty or null")
    return script


def as_number(name: str, value, kind=int):
    """Config value as int/float; anything else is a ConfigError naming it."""
    if isinstance(value, bool):
        raise ConfigError(f"{name} '{value}' no es numérico")
    try:
        return kind(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} '{value}' no es numérico") from e


def validate_positive(name: str, value):
    if value is None:
        return None
    number = as_number(name, value)
    if number <= 0:
        raise ConfigError(f"{name} should be larger than 0 (recibido {value})")
    return number

