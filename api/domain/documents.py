# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
CPF and CNPJ helpers: digit normalisation, display formatting and
check-digit validation.
"""

import re
from typing import Optional

_NON_DIGITS = re.compile(r"[^0-9]")

CNPJ_FIRST_WEIGHTS = [5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2]
CNPJ_SECOND_WEIGHTS = [6, 5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2]


def only_digits(value: Optional[str]) -> str:
    """Strip everything that is not a digit."""
    if not value:
        return ""
    return _NON_DIGITS.sub("", value)


def format_cpf(cpf: Optional[str]) -> str:
    """Format as XXX.XXX.XXX-XX, tolerating partial input."""
    numbers = only_digits(cpf)
    if len(numbers) <= 3:
        return numbers
    if len(numbers) <= 6:
        return f"{numbers[:3]}.{numbers[3:]}"
    if len(numbers) <= 9:
        return f"{numbers[:3]}.{numbers[3:6]}.{numbers[6:]}"
    return f"{numbers[:3]}.{numbers[3:6]}.{numbers[6:9]}-{numbers[9:11]}"


def format_cnpj(cnpj: Optional[str]) -> str:
    """Format as XX.XXX.XXX/XXXX-XX, tolerating partial input."""
    numbers = only_digits(cnpj)
    if len(numbers) <= 2:
        return numbers
    if len(numbers) <= 5:
        return f"{numbers[:2]}.{numbers[2:]}"
    if len(numbers) <= 8:
        return f"{numbers[:2]}.{numbers[2:5]}.{numbers[5:]}"
    if len(numbers) <= 12:
        return f"{numbers[:2]}.{numbers[2:5]}.{numbers[5:8]}/{numbers[8:]}"
    return f"{numbers[:2]}.{numbers[2:5]}.{numbers[5:8]}/{numbers[8:12]}-{numbers[12:14]}"


def _cpf_digit(numbers: str, length: int) -> int:
    total = sum(int(numbers[i]) * (length + 1 - i) for i in range(length))
    digit = 11 - (total % 11)
    return 0 if digit >= 10 else digit


def validate_cpf(cpf: Optional[str]) -> bool:
    """Validate CPF check digits. Sequences of one repeated digit are invalid."""
    numbers = only_digits(cpf)
    if len(numbers) != 11 or len(set(numbers)) == 1:
        return False
    if _cpf_digit(numbers, 9) != int(numbers[9]):
        return False
    return _cpf_digit(numbers, 10) == int(numbers[10])


def _cnpj_digit(numbers: str, weights) -> int:
    total = sum(int(n) * w for n, w in zip(numbers, weights))
    remainder = total % 11
    return 0 if remainder < 2 else 11 - remainder


def validate_cnpj(cnpj: Optional[str]) -> bool:
    """Validate CNPJ check digits. Sequences of one repeated digit are invalid."""
    numbers = only_digits(cnpj)
    if len(numbers) != 14 or len(set(numbers)) == 1:
        return False
    if _cnpj_digit(numbers[:12], CNPJ_FIRST_WEIGHTS) != int(numbers[12]):
        return False
    return _cnpj_digit(numbers[:13], CNPJ_SECOND_WEIGHTS) == int(numbers[13])


def format_document(document: Optional[str], document_type: str) -> str:
    if not document:
        return ""
    return format_cpf(document) if document_type == "PF" else format_cnpj(document)


def validate_document(document: Optional[str], document_type: str) -> bool:
    if not document:
        return False
    return validate_cpf(document) if document_type == "PF" else validate_cnpj(document)
