"""Сравнение версий прошивок и ПО"""
import re
from typing import Optional, List


_WELL_FORMED = re.compile(r"^\d+(\.\d+)*$")


def _parse_segment(segment: str) -> int:
    # int() принимает "1_0", нам это не нужно
    if "_" in segment:
        return 0
    try:
        return int(segment)
    except ValueError:
        return 0


def parse_version(version_str: str) -> List[int]:
    """Разбивает версию по точкам; нечисловые сегменты считаются нулём"""
    return [_parse_segment(part) for part in (version_str or "").split(".")]


def compare_versions(v1: str, v2: str) -> int:
    """
    Сравнивает две версии посегментно как числа.

    Возвращает -1, если v1 < v2, 0 при равенстве и 1, если v1 > v2.
    Недостающие сегменты дополняются нулями, поэтому "1.2" == "1.2.0".
    Корректность формата не проверяется: "1.x" читается как "1.0".
    """
    parts1 = parse_version(v1)
    parts2 = parse_version(v2)

    max_length = max(len(parts1), len(parts2))
    parts1 += [0] * (max_length - len(parts1))
    parts2 += [0] * (max_length - len(parts2))

    for p1, p2 in zip(parts1, parts2):
        if p1 < p2:
            return -1
        if p1 > p2:
            return 1
    return 0


def is_newer(current_version: Optional[str], candidate_version: str) -> bool:
    """True, если версии нет вовсе или candidate строго новее установленной"""
    if not current_version:
        return True
    return compare_versions(current_version, candidate_version) < 0


def is_well_formed_version(version_str: str) -> bool:
    return bool(version_str) and bool(_WELL_FORMED.match(version_str.strip()))
