"""
External collaborators of the KYB compliance gate

- Sanctions screening (ComplyAdvantage-style search API, or demo)
- KYB verification (Sumsub-style applicant and token API, or demo)
- On-chain credential registry (factory contract via web3.py, or disabled)
"""

from providers.screening import (
    ScreeningClient,
    ScreeningResult,
    SanctionMatch,
    ComplyAdvantageScreeningClient,
    DemoScreeningClient,
    has_sanction_hit,
    top_matches,
    build_screening_client,
)
from providers.verification import (
    VerificationProvider,
    ApplicantSession,
    SumsubVerificationProvider,
    DemoVerificationProvider,
    verify_webhook_signature,
    build_verification_provider,
)
from providers.registry import (
    CredentialRegistry,
    Web3CredentialRegistry,
    DisabledCredentialRegistry,
    build_credential_registry,
)

__all__ = [
    # Screening
    'ScreeningClient',
    'ScreeningResult',
    'SanctionMatch',
    'ComplyAdvantageScreeningClient',
    'DemoScreeningClient',
    'has_sanction_hit',
    'top_matches',
    'build_screening_client',
    # Verification
    'VerificationProvider',
    'ApplicantSession',
    'SumsubVerificationProvider',
    'DemoVerificationProvider',
    'verify_webhook_signature',
    'build_verification_provider',
    # Registry
    'CredentialRegistry',
    'Web3CredentialRegistry',
    'DisabledCredentialRegistry',
    'build_credential_registry',
]
