# core/relay/case_search.py
"""Petitioner/respondent case-status search on the High Court services site"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from core.courts import CASE_QUERY_ACTION, CASE_QUERY_APP_FLAG
from core.relay.cookie_jar import format_cookie_header, normalize_cookie_jar

SEARCH_FIELDS = (
    'captcha',
    'petres_name',
    'rgyear',
    'caseStatusSearchType',
    'f',
    'court_code',
    'state_code',
    'court_complex_code',
)


def _as_text(value: Any) -> str:
    if value is None:
        return ''
    return str(value).strip()


@dataclass
class CaseSearchRequest:
    captcha: str
    petres_name: str
    rgyear: str
    caseStatusSearchType: str
    f: str
    court_code: str
    state_code: str
    court_complex_code: str
    cookies: Dict[str, str] = field(default_factory=dict)
    session_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "CaseSearchRequest":
        """
        Raises:
            InvalidCookieJar: ``cookies`` is neither an object nor a string
        """
        values = {name: _as_text(payload.get(name)) for name in SEARCH_FIELDS}
        return cls(
            **values,
            cookies=normalize_cookie_jar(payload.get('cookies')),
            session_id=_as_text(payload.get('sessionId')) or None,
        )

    @property
    def cookie_header(self) -> str:
        return format_cookie_header(self.cookies)

    def missing_fields(self) -> List[str]:
        missing = [name for name in SEARCH_FIELDS if not getattr(self, name)]
        if not self.cookie_header:
            missing.append('cookiesString')
        return missing

    def form_data(self) -> Dict[str, str]:
        form = {
            'court_code': self.court_code,
            'state_code': self.state_code,
            'court_complex_code': self.court_complex_code,
            'captcha': self.captcha,
            'petres_name': self.petres_name,
            'rgyear': self.rgyear,
            'caseStatusSearchType': self.caseStatusSearchType,
            'f': self.f,
        }
        form['action_code'] = CASE_QUERY_ACTION
        form['appFlag'] = CASE_QUERY_APP_FLAG
        return form


__all__ = ["CaseSearchRequest", "SEARCH_FIELDS"]
