from fastapi import Request

from invitemarket.core.config import settings
from invitemarket.core.crypto import SecretCipher
from invitemarket.services.identity import IdentityResolver
from invitemarket.services.settlement import SettlementAdapter
from invitemarket.services.signature import SignaturePolicy


# Built once in the app lifespan (see invitemarket.main); tests override these.

def get_settlement_adapter(request: Request) -> SettlementAdapter:
    return request.app.state.settlement


def get_cipher(request: Request) -> SecretCipher:
    return request.app.state.cipher


def get_identity_resolver(request: Request) -> IdentityResolver:
    return request.app.state.identity


def get_signature_policy() -> SignaturePolicy:
    return SignaturePolicy(
        max_age_seconds=settings.signature_max_age_seconds,
        future_skew_seconds=settings.signature_future_skew_seconds,
    )
