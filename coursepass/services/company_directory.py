"""企業客戶的唯讀名錄。"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from ..common.errors import NotFound


@dataclass(frozen=True)
class Company:
    company_id: str
    name: str
    contact_email: str = ""
    status: str = "active"

    def to_dict(self) -> Dict[str, str]:
        return {
            "company_id": self.company_id,
            "name": self.name,
            "contact_email": self.contact_email,
            "status": self.status,
        }


DEFAULT_COMPANIES: List[Company] = [
    Company(company_id="comp_001", name="Hsinchu Semiconductor Co.", contact_email="training@hsinchu-semi.example"),
    Company(company_id="comp_002", name="Dunhua Financial Holdings", contact_email="hr@dunhua-fin.example"),
    Company(company_id="comp_003", name="Tainan Foods Group", contact_email="people@tainan-foods.example"),
]


class CompanyDirectory:
    def __init__(self, data_file: Optional[Path] = None, companies: Optional[List[Company]] = None) -> None:
        self._data_file = data_file
        source = companies if companies is not None else self._load()
        self._companies = {c.company_id: c for c in source}

    def list_companies(self) -> List[Company]:
        return sorted(self._companies.values(), key=lambda c: c.company_id)

    def get_company(self, company_id: str) -> Optional[Company]:
        return self._companies.get(str(company_id))

    def require_company(self, company_id: str) -> Company:
        company = self.get_company(company_id)
        if company is None:
            raise NotFound(f"company {company_id} not found", company_id=company_id)
        return company

    def _load(self) -> List[Company]:
        if self._data_file is None:
            return list(DEFAULT_COMPANIES)
        if not self._data_file.exists():
            self._data_file.parent.mkdir(parents=True, exist_ok=True)
            self._data_file.write_text(
                json.dumps([c.to_dict() for c in DEFAULT_COMPANIES], ensure_ascii=False, indent=2) + "\n",
                encoding="utf-8",
            )
            return list(DEFAULT_COMPANIES)
        text = self._data_file.read_text(encoding="utf-8")
        if not text.strip():
            return []
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError("companies.json is not valid JSON") from exc
        if not isinstance(payload, list):
            raise ValueError("companies.json must hold an array of companies")
        return [
            Company(
                company_id=str(item.get("company_id")),
                name=str(item.get("name", "Unnamed company")),
                contact_email=str(item.get("contact_email", "")),
                status=str(item.get("status", "active")),
            )
            for item in payload
            if isinstance(item, dict) and item.get("company_id")
        ]
