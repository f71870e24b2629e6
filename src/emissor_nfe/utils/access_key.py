from __future__ import annotations

import re

_WEIGHTS = range(2, 10)


def check_digit(key43: str) -> str:
    """Modulo-11 check digit over the first 43 digits of an access key."""
    total = 0
    for i, digit in enumerate(reversed(key43)):
        total += int(digit) * _WEIGHTS[i % len(_WEIGHTS)]
    rest = total % 11
    return "0" if rest < 2 else str(11 - rest)


def generate_access_key(
    c_uf: str,
    aamm: str,
    cnpj: str,
    serie: int,
    n_nf: int,
    c_nf: int,
    tp_emis: str = "1",
    mod: str = "55",
) -> str:
    """Generate the 44-digit NF-e access key.

    Format: cUF(2) + AAMM(4) + CNPJ(14) + mod(2) + serie(3) + nNF(9)
    + tpEmis(1) + cNF(8) + cDV(1)
    """
    parts = [
        c_uf.zfill(2),
        aamm,
        cnpj.zfill(14),
        mod,
        str(serie).zfill(3),
        str(n_nf).zfill(9),
        tp_emis,
        str(c_nf).zfill(8),
    ]
    key43 = "".join(parts)
    if len(key43) != 43 or not key43.isdigit():
        raise ValueError(f"Chave de acesso deve ter 43 dígitos antes do DV, got {len(key43)}: {key43}")
    return key43 + check_digit(key43)


def is_valid_access_key(value: str) -> bool:
    """True for exactly 44 digits with a matching check digit."""
    if not re.fullmatch(r"\d{44}", value or ""):
        return False
    return check_digit(value[:43]) == value[43]


def format_access_key(value: str) -> str:
    """Group an access key in blocks of four digits, as printed on the DANFE."""
    return " ".join(value[i : i + 4] for i in range(0, len(value), 4))
