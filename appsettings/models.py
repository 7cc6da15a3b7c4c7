"""
appsettings/models.py -- Typed view of the settings document.

The stored document is a camelCase JSON object (that is also the wire
shape). AppSettings is what Python callers use: the login path reads
session_duration_hours, the OIDC routes read the oidc_* fields.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from appsettings.validation import coerce


@dataclass
class BankAccount:
    id: str
    name: str
    color: str


@dataclass
class AppSettings:
    language_preference: str = "fr"
    currency_preference: str = "EUR"
    session_duration_hours: int = 12
    sort_by_cost: bool = False
    joint_account_enabled: bool = True
    bank_accounts_enabled: bool = False
    bank_accounts: dict[str, list[BankAccount]] = field(
        default_factory=lambda: {"person1": [], "person2": []}
    )
    oidc_enabled: bool = False
    oidc_provider_name: str = "SSO"
    oidc_issuer: str = ""
    oidc_client_id: str = ""
    oidc_client_secret: str = ""
    oidc_redirect_uri: str = ""

    @classmethod
    def from_document(cls, document: dict) -> "AppSettings":
        doc = coerce(document)
        return cls(
            language_preference=doc["languagePreference"],
            currency_preference=doc["currencyPreference"],
            session_duration_hours=doc["sessionDurationHours"],
            sort_by_cost=doc["sortByCost"],
            joint_account_enabled=doc["jointAccountEnabled"],
            bank_accounts_enabled=doc["bankAccountsEnabled"],
            bank_accounts={
                person: [BankAccount(**a) for a in accounts]
                for person, accounts in doc["bankAccounts"].items()
            },
            oidc_enabled=doc["oidcEnabled"],
            oidc_provider_name=doc["oidcProviderName"],
            oidc_issuer=doc["oidcIssuer"],
            oidc_client_id=doc["oidcClientId"],
            oidc_client_secret=doc["oidcClientSecret"],
            oidc_redirect_uri=doc["oidcRedirectUri"],
        )

    def to_document(self) -> dict:
        return {
            "languagePreference": self.language_preference,
            "currencyPreference": self.currency_preference,
            "sessionDurationHours": self.session_duration_hours,
            "sortByCost": self.sort_by_cost,
            "jointAccountEnabled": self.joint_account_enabled,
            "bankAccountsEnabled": self.bank_accounts_enabled,
            "bankAccounts": {
                person: [{"id": a.id, "name": a.name, "color": a.color} for a in accounts]
                for person, accounts in self.bank_accounts.items()
            },
            "oidcEnabled": self.oidc_enabled,
            "oidcProviderName": self.oidc_provider_name,
            "oidcIssuer": self.oidc_issuer,
            "oidcClientId": self.oidc_client_id,
            "oidcClientSecret": self.oidc_client_secret,
            "oidcRedirectUri": self.oidc_redirect_uri,
        }
