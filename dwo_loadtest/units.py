"""Normalisation of Kubernetes resource quantities reported by metrics-server"""

from typing import Union

_BINARY_MEMORY_SUFFIXES = {
    'Ki': 1024,
    'Mi': 1024 ** 2,
    'Gi': 1024 ** 3,
    'Ti': 1024 ** 4,
}

_DECIMAL_MEMORY_SUFFIXES = {
    'k': 1e3,
    'M': 1e6,
    'G': 1e9,
    'T': 1e12,
}

_FRACTIONAL_SUFFIXES = {
    'n': 1e-9,
    'u': 1e-6,
    'm': 1e-3,
}


def parse_cpu_to_millicores(cpu: Union[str, int, float]) -> int:
    """Convert a CPU quantity ("250m", "250000u", "250000000n", "0.25") to millicores"""
    value = str(cpu).strip()
    if not value:
        raise ValueError("Empty CPU quantity")
    if value.endswith('n'):
        return round(float(value[:-1]) / 1e6)
    if value.endswith('u'):
        return round(float(value[:-1]) / 1e3)
    if value.endswith('m'):
        return round(float(value[:-1]))
    return round(float(value) * 1000)


def parse_memory_to_bytes(memory: Union[str, int, float]) -> float:
    """Convert a memory quantity ("200Mi", "209715200", "1G") to bytes"""
    value = str(memory).strip()
    if not value:
        raise ValueError("Empty memory quantity")
    suffix = value[-2:]
    if suffix in _BINARY_MEMORY_SUFFIXES:
        return float(value[:-2]) * _BINARY_MEMORY_SUFFIXES[suffix]
    suffix = value[-1]
    if suffix in _DECIMAL_MEMORY_SUFFIXES:
        return float(value[:-1]) * _DECIMAL_MEMORY_SUFFIXES[suffix]
    if suffix in _FRACTIONAL_SUFFIXES:
        return float(value[:-1]) * _FRACTIONAL_SUFFIXES[suffix]
    return float(value)


def bytes_to_mib(value: float) -> float:
    return value / 1024 / 1024
