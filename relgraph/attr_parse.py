import datetime
import decimal
import relgraph
import sqlalchemy
from .errors import ValidationError

TRUE_VALUES = ("1", "true", "yes", "on")
FALSE_VALUES = ("0", "false", "no", "off")
LIKE_OPERATORS = ("like", "contains", "startswith", "endswith")


def parse_attr(column, attr_val):
    """
    Parse the supplied `attr_val` so it can be compared with the SQLAlchemy `column`

    :param column: SQLAlchemy column
    :param attr_val: filter value, usually a string from the url query
    :return: processed value
    """
    if attr_val is None:
        return attr_val

    try:
        python_type = column.type.python_type
    except NotImplementedError as exc:
        # custom column type, the value is passed as is
        relgraph.log.debug(exc)
        return attr_val

    # skip type coercion on JSON columns, since they could be anything
    if type(column.type) is sqlalchemy.sql.sqltypes.JSON:
        return attr_val

    if isinstance(attr_val, python_type) and not (python_type is datetime.date and isinstance(attr_val, datetime.datetime)):
        return attr_val

    try:
        if python_type == datetime.datetime:
            if isinstance(attr_val, datetime.date):
                return datetime.datetime.combine(attr_val, datetime.time())
            return datetime.datetime.fromisoformat(str(attr_val).replace("Z", "+00:00"))
        if python_type == datetime.date:
            if isinstance(attr_val, datetime.datetime):
                return attr_val.date()
            return datetime.date.fromisoformat(str(attr_val)[:10])
        if python_type == bool:
            value = str(attr_val).strip().lower()
            if value in TRUE_VALUES:
                return True
            if value in FALSE_VALUES:
                return False
            raise ValueError(f"not a boolean: {attr_val}")
        if python_type == decimal.Decimal:
            return decimal.Decimal(str(attr_val))
        return python_type(attr_val)
    except (ValueError, TypeError, decimal.InvalidOperation) as exc:
        raise ValidationError(f"Invalid value '{attr_val}' for '{column.name}': {exc}", source=f"filter[{column.name}]")


def split_values(value, separator=","):
    if isinstance(value, (list, tuple, set)):
        return list(value)
    if isinstance(value, str):
        return [item.strip() for item in value.split(separator)]
    return [value]


def parse_filter_value(column, operator, value):
    """
    Coerce a filter value for ``operator``:
    - like operators keep the string
    - "in" and "between" accept a list or a comma separated string
    """
    if operator in LIKE_OPERATORS:
        return str(value)
    if operator in ("in", "between"):
        values = [parse_attr(column, item) for item in split_values(value)]
        if operator == "between" and len(values) != 2:
            raise ValidationError(f"between filter on '{column.name}' requires 2 values, got {len(values)}")
        return values
    if isinstance(value, (list, tuple)):
        return [parse_attr(column, item) for item in value]
    return parse_attr(column, value)
