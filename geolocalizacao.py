"""
Resolução do país do visitante e regras de visibilidade por região.
O país vem dos cabeçalhos injetados pelo proxy/CDN na frente da aplicação.
"""
import re
from typing import Iterable, Mapping, Optional

NON_BR = 'NON_BR'
BRAZIL = 'BR'

# Ordem de preferência dos cabeçalhos de geolocalização
COUNTRY_HEADERS = (
    'CF-IPCountry',
    'X-Vercel-IP-Country',
    'CloudFront-Viewer-Country',
    'X-Country-Code',
)
# Cloudflare usa XX para desconhecido e T1 para Tor
UNKNOWN_COUNTRIES = {'XX', 'T1'}

_ISO_ALPHA2 = re.compile(r'^[A-Z]{2}$')


def normalize_country(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    code = str(value).strip().upper()
    if not _ISO_ALPHA2.match(code) or code in UNKNOWN_COUNTRIES:
        return None
    return code


def resolve_country(headers: Mapping[str, str], default: Optional[str] = None) -> Optional[str]:
    for header in COUNTRY_HEADERS:
        code = normalize_country(headers.get(header))
        if code:
            return code
    return normalize_country(default)


def normalize_region_code(value: Optional[str]) -> Optional[str]:
    """Valida o código de região do admin: ISO alpha-2 ou NON_BR."""
    if not value or not isinstance(value, str):
        return None
    code = value.strip().upper()
    if code == NON_BR or _ISO_ALPHA2.match(code):
        return code
    return None


def region_matches(region_code: str, country: Optional[str]) -> bool:
    if not country:
        return False
    if region_code == NON_BR:
        return country != BRAZIL
    return region_code == country


def is_available(region_codes: Iterable[str], country: Optional[str]) -> bool:
    # Produto sem região não aparece para ninguém
    codes = list(region_codes)
    if not codes or not country:
        return False
    return any(region_matches(code, country) for code in codes)
