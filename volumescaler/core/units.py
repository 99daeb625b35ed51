"""
Utilization & Size Adapters.

Чистые функции без состояния для перевода данных платформы в семантические единицы:
- Размеры Kubernetes quantity ("5Gi", "5120Mi", "0.0049Ti") → байты
- Байты → строка размера в единицах policy ("7Gi")
- (used, total) файловой системы → процент utilization
- Проценты и длительности из полей policy
"""

import math
import re
from typing import Optional, Union

from volumescaler.core.exceptions import PolicyParseError, SizeParseError
from volumescaler.core.logging import get_logger

logger = get_logger(__name__)

KI = 1024
MI = 1024 ** 2
GI = 1024 ** 3
TI = 1024 ** 4
PI = 1024 ** 5
EI = 1024 ** 6

# Binary suffixes сравниваются без учёта регистра ("GI", "GIB", "gib")
BINARY_UNITS = {
    "B": 1,
    "KI": KI, "KIB": KI,
    "MI": MI, "MIB": MI,
    "GI": GI, "GIB": GI,
    "TI": TI, "TIB": TI,
    "PI": PI, "PIB": PI,
    "EI": EI, "EIB": EI,
}

# Decimal suffixes Kubernetes quantity (регистр значим)
DECIMAL_UNITS = {
    "k": 10 ** 3, "K": 10 ** 3,
    "M": 10 ** 6,
    "G": 10 ** 9,
    "T": 10 ** 12,
    "P": 10 ** 15,
    "E": 10 ** 18,
}

DEFAULT_SIZE_UNIT = "Gi"

_SIZE_RE = re.compile(r"^([0-9]*\.?[0-9]+)\s*([A-Za-z]*)$")
_PERCENT_RE = re.compile(r"^([0-9]*\.?[0-9]+)\s*%?$")
_DURATION_PART_RE = re.compile(r"([0-9]*\.?[0-9]+)(h|m|s)")

_DURATION_UNITS = {"h": 3600, "m": 60, "s": 1}


def unit_multiplier(unit: str) -> Optional[int]:
    """
    Множитель для suffix размера.

    Returns:
        int: Количество байт в единице или None для неизвестного suffix
    """
    if unit in DECIMAL_UNITS:
        return DECIMAL_UNITS[unit]
    return BINARY_UNITS.get(unit.upper())


def parse_size(value: Union[str, int, float], default_unit: str = DEFAULT_SIZE_UNIT) -> float:
    """
    Перевод строки размера в байты.

    Правила:
    - "5Gi", "5120Mi", "0.0049Ti", "5GiB" - binary suffixes
    - "5G", "500M" - decimal suffixes Kubernetes quantity
    - "5" - число без suffix интерпретируется в default_unit
    - Неизвестный suffix - default_unit + warning (не ошибка)

    Args:
        value: Строка размера или число (в default_unit)
        default_unit: Единица для чисел без suffix и неизвестных suffix

    Returns:
        float: Размер в байтах

    Raises:
        SizeParseError: Пустая строка или отсутствует числовая часть
    """
    default_multiplier = unit_multiplier(default_unit)
    if default_multiplier is None:
        raise ValueError(f"Unknown default unit: {default_unit!r}")

    if isinstance(value, bool):
        raise SizeParseError(f"Invalid size value: {value!r}")

    if isinstance(value, (int, float)):
        return float(value) * default_multiplier

    size_str = (value or "").strip()
    if not size_str:
        raise SizeParseError("Size string is empty")

    match = _SIZE_RE.match(size_str)
    if not match:
        raise SizeParseError(
            f"Error parsing number from size string '{size_str}'",
            details={"value": size_str}
        )

    number = float(match.group(1))
    unit = match.group(2)

    if not unit:
        return number * default_multiplier

    multiplier = unit_multiplier(unit)
    if multiplier is None:
        logger.warning(
            "Unrecognized size unit, assuming default",
            extra={
                "unit": unit,
                "size": size_str,
                "default_unit": default_unit,
            }
        )
        multiplier = default_multiplier

    return number * multiplier


def bytes_to_gi(size_bytes: float) -> float:
    """Байты → Gi (float)."""
    return size_bytes / GI


def round_up_to_unit(size_bytes: float, unit: str = DEFAULT_SIZE_UNIT) -> float:
    """
    Округление размера вверх до целого числа единиц.

    Погрешность float (10Gi * 1.3 = 13.000000000000002Gi) не должна
    превращаться в лишнюю единицу, поэтому значение сначала округляется
    до 6 знаков.
    """
    multiplier = unit_multiplier(unit)
    if multiplier is None:
        raise ValueError(f"Unknown unit: {unit!r}")
    units = round(size_bytes / multiplier, 6)
    return math.ceil(units) * multiplier


def format_size(size_bytes: float, unit: str = DEFAULT_SIZE_UNIT) -> str:
    """
    Формирование строки размера для size-increase request.

    Размер округляется вверх до целых единиц: 6.5Gi → "7Gi".

    Args:
        size_bytes: Размер в байтах
        unit: Единица policy (по умолчанию Gi)

    Returns:
        str: Например "7Gi"
    """
    multiplier = unit_multiplier(unit)
    if multiplier is None:
        raise ValueError(f"Unknown unit: {unit!r}")
    return f"{int(round_up_to_unit(size_bytes, unit) // multiplier)}{unit}"


def utilization_percent(used: float, total: float) -> float:
    """
    Процент utilization файловой системы.

    Нулевой (или отрицательный) total не приводит к делению на ноль:
    такая файловая система считается пустой (0%).

    Args:
        used: Использовано (в любых единицах)
        total: Всего (в тех же единицах)

    Returns:
        float: 0.0 .. 100.0+ (used может превышать total на reserved blocks)
    """
    if total <= 0:
        return 0.0
    return max(0.0, (used / total) * 100.0)


def parse_percent(value: str, field: str = "percent") -> float:
    """
    Парсинг процентного значения policy ("70%").

    Raises:
        PolicyParseError: Строка не является процентом
    """
    raw = (value or "").strip() if isinstance(value, str) else value
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return float(raw)
    if not isinstance(raw, str) or not raw:
        raise PolicyParseError(f"Invalid {field}: {value!r}", field=field)

    match = _PERCENT_RE.match(raw)
    if not match:
        raise PolicyParseError(f"Invalid {field}: {value!r}", field=field)
    return float(match.group(1))


def parse_duration_seconds(value: Union[str, int, float], field: str = "duration") -> float:
    """
    Парсинг длительности: 300, "300", "300s", "5m", "1h30m".

    Raises:
        PolicyParseError: Невалидная длительность
    """
    if isinstance(value, bool):
        raise PolicyParseError(f"Invalid {field}: {value!r}", field=field)
    if isinstance(value, (int, float)):
        if value < 0:
            raise PolicyParseError(f"Invalid {field}: {value!r}", field=field)
        return float(value)

    raw = (value or "").strip()

    try:
        seconds = float(raw)
    except ValueError:
        # Go-style duration: последовательность <число><h|m|s>
        parts = _DURATION_PART_RE.findall(raw)
        if not parts or "".join(num + unit for num, unit in parts) != raw:
            raise PolicyParseError(f"Invalid {field}: {value!r}", field=field)
        seconds = sum(float(num) * _DURATION_UNITS[unit] for num, unit in parts)

    if not math.isfinite(seconds) or seconds < 0:
        raise PolicyParseError(f"Invalid {field}: {value!r}", field=field)
    return seconds
