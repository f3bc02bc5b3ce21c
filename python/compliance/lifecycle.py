"""
KYB Lifecycle State Machine

Owns every change to an institution's ``kyb_status``. Each transition runs
in one transaction: the row is selected FOR UPDATE, the transition is
validated against ``compliance.states.TRANSITIONS``, and the new status is
written together with its audit row.

On-chain writes go through the ``CredentialSynchronizer`` and always happen
outside the database transaction. Suspension is fail-closed: the local
record stops being ``verified`` before the revoke is attempted, and
``revoke_pending`` stays set until a revoke is confirmed.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from compliance import audit
from compliance.exceptions import NotFoundError, ProviderError, ValidationError
from compliance.states import canonical_wallet, next_status
from compliance.synchronizer import CredentialSynchronizer, SagaResult
from database.connection import DatabaseSessionProvider
from database.models import Institution, KybAction, KybStatus
from database.repositories import DuplicateInstitutionError, InstitutionRepository
from log_utils import describe_error, sanitize_for_logging
from providers.verification import DemoVerificationProvider, VerificationProvider

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SubmitResult:
    token: str
    demo: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"token": self.token, "demo": self.demo}


@dataclass
class ApprovalResult:
    """Outcome of an approval; partial when the on-chain write did not land"""
    wallet: str
    kyb_status: KybStatus
    on_chain_verified: bool
    tx_hash: Optional[str] = None
    saga: Optional[SagaResult] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def partial(self) -> bool:
        return self.error_kind is not None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "ok": True,
            "wallet": self.wallet,
            "kybStatus": self.kyb_status.value,
            "onChainVerified": self.on_chain_verified,
            "txHash": self.tx_hash,
        }
        if self.saga is not None:
            result["saga"] = self.saga.to_dict()
        if self.partial:
            result["error"] = {"kind": self.error_kind, "message": self.error_message}
        return result


class KybLifecycle:
    """Transition operations for institution compliance records."""

    def __init__(
        self,
        db: DatabaseSessionProvider,
        synchronizer: CredentialSynchronizer,
        verification: Optional[VerificationProvider] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.synchronizer = synchronizer
        self.verification = verification or DemoVerificationProvider()
        self._now = clock

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _load(session: Session, wallet: str, for_update: bool = True) -> Institution:
        institution = InstitutionRepository(session).get_by_wallet(wallet, for_update=for_update)
        if institution is None:
            raise NotFoundError(
                "Institution not found",
                field="wallet",
                suggestion="Submit KYB for this wallet first",
            )
        return institution

    def _suspend(
        self,
        session: Session,
        institution: Institution,
        action: KybAction,
        meta: Optional[Dict[str, Any]] = None,
        note: Optional[str] = None,
    ) -> bool:
        """Move a locked, verified row to suspended. Returns whether a revoke is owed."""
        from_status = institution.kyb_status
        to_status = next_status(from_status, action)
        revoke_owed = institution.on_chain_verified or institution.revoke_pending

        institution.kyb_status = to_status
        institution.on_chain_verified = False
        institution.revoke_pending = revoke_owed
        session.flush()

        audit.append(
            session,
            institution.wallet_address,
            action,
            from_status,
            to_status,
            meta={**(meta or {}), "revokePending": revoke_owed},
            note=note,
        )
        return revoke_owed

    # ------------------------------------------------------------------
    # submission
    # ------------------------------------------------------------------

    def submit(
        self,
        wallet_address: Optional[str],
        legal_name: Optional[str] = None,
        jurisdiction: Optional[str] = None,
        contact_email: Optional[str] = None,
    ) -> SubmitResult:
        """
        Register a KYB application and return an SDK token.

        New wallets are created as ``pending``. A ``not_found`` record is
        reactivated with the supplied fields. Any other existing record keeps
        its status and fields; the submission is still audited.
        """
        wallet = canonical_wallet(wallet_address, field="walletAddress")

        with self.db.session_scope() as session:
            repo = InstitutionRepository(session)
            institution = repo.get_by_wallet(wallet, for_update=True)
            fields_updated = False

            if institution is None:
                try:
                    institution = repo.create(
                        wallet,
                        legal_name=legal_name,
                        jurisdiction=jurisdiction,
                        contact_email=contact_email,
                        kyb_status=KybStatus.PENDING,
                    )
                    from_status = KybStatus.NOT_FOUND
                    fields_updated = True
                except DuplicateInstitutionError:
                    # Lost a race with a concurrent first submission
                    institution = self._load(session, wallet)
                    from_status = institution.kyb_status
            else:
                from_status = institution.kyb_status
                if from_status == KybStatus.NOT_FOUND:
                    institution.kyb_status = next_status(from_status, KybAction.SUBMIT)
                    institution.legal_name = legal_name
                    institution.jurisdiction = jurisdiction
                    institution.contact_email = contact_email
                    fields_updated = True

            audit.append(
                session,
                wallet,
                KybAction.SUBMIT,
                from_status,
                institution.kyb_status,
                meta={"demo": self.verification.demo, "fieldsUpdated": fields_updated},
            )
            applicant_id = institution.provider_applicant_id

        logger.info(
            "KYB submission: wallet=%s legal_name=%s status=%s",
            wallet, sanitize_for_logging(legal_name), institution.kyb_status.value,
        )

        # Stored before the token call so a token failure never orphans the applicant
        created_id = self.verification.ensure_applicant(wallet, applicant_id)
        if created_id and not applicant_id:
            with self.db.session_scope() as session:
                institution = self._load(session, wallet)
                if institution.provider_applicant_id is None:
                    institution.provider_applicant_id = created_id

        applicant = self.verification.refresh_token(wallet)
        return SubmitResult(token=applicant.token, demo=applicant.demo)

    def refresh_token(self, wallet_address: Optional[str]) -> SubmitResult:
        wallet = canonical_wallet(wallet_address)
        with self.db.session_scope() as session:
            self._load(session, wallet, for_update=False)
        applicant = self.verification.refresh_token(wallet)
        return SubmitResult(token=applicant.token, demo=applicant.demo)

    # ------------------------------------------------------------------
    # review outcomes
    # ------------------------------------------------------------------

    def approve(self, wallet_address: Optional[str], action: KybAction = KybAction.APPROVE) -> ApprovalResult:
        """
        Approve a pending institution and write its on-chain credential.

        A failed on-chain write does not undo the approval: the caller gets a
        partial ``ApprovalResult`` with ``on_chain_verified=False``.
        """
        if action not in (KybAction.APPROVE, KybAction.DEMO_APPROVE):
            raise ValidationError(f"'{action.value}' is not an approval action", field="action")
        wallet = canonical_wallet(wallet_address)

        with self.db.session_scope() as session:
            institution = self._load(session, wallet)
            from_status = institution.kyb_status
            to_status = next_status(from_status, action)

            institution.kyb_status = to_status
            institution.last_screened_at = self._now()
            institution.sanction_hit = False
            audit.append(session, wallet, action, from_status, to_status)

            accredited = institution.is_accredited
            jurisdiction = institution.jurisdiction

        logger.info("Institution approved: wallet=%s action=%s", wallet, action.value)

        try:
            saga = self.synchronizer.verify(wallet, accredited, jurisdiction)
        except ProviderError as e:
            logger.warning(
                "Approved without on-chain credential: wallet=%s: %s", wallet, describe_error(e)
            )
            return ApprovalResult(
                wallet=wallet,
                kyb_status=KybStatus.VERIFIED,
                on_chain_verified=False,
                error_kind=e.code,
                error_message=e.message,
            )

        with self.db.session_scope() as session:
            institution = self._load(session, wallet)
            if institution.kyb_status == KybStatus.VERIFIED:
                institution.on_chain_verified = True
                if saga.tx_hash:
                    institution.on_chain_tx_hash = saga.tx_hash
                audit.append(
                    session,
                    wallet,
                    KybAction.ONCHAIN_VERIFY,
                    KybStatus.VERIFIED,
                    KybStatus.VERIFIED,
                    meta=saga.to_dict(),
                )
                return ApprovalResult(
                    wallet=wallet,
                    kyb_status=KybStatus.VERIFIED,
                    on_chain_verified=True,
                    tx_hash=saga.tx_hash,
                    saga=saga,
                )

            # Suspended while the credential was being written: owe a revoke
            institution.revoke_pending = True
            logger.warning(
                "Status changed to %s during on-chain verify: wallet=%s, revoke scheduled",
                institution.kyb_status.value, wallet,
            )
            return ApprovalResult(
                wallet=wallet,
                kyb_status=institution.kyb_status,
                on_chain_verified=False,
                tx_hash=saga.tx_hash,
                saga=saga,
                error_kind="STATUS_CHANGED",
                error_message=f"Institution is now '{institution.kyb_status.value}'",
            )

    def reject(self, wallet_address: Optional[str], reason: Optional[str] = None) -> Dict[str, Any]:
        wallet = canonical_wallet(wallet_address)
        with self.db.session_scope() as session:
            institution = self._load(session, wallet)
            from_status = institution.kyb_status
            institution.kyb_status = next_status(from_status, KybAction.REJECT)
            audit.append(session, wallet, KybAction.REJECT, from_status, institution.kyb_status, note=reason)
        logger.info("Institution rejected: wallet=%s", wallet)
        return {"ok": True, "wallet": wallet, "kybStatus": KybStatus.REJECTED.value}

    # ------------------------------------------------------------------
    # suspension and revocation
    # ------------------------------------------------------------------

    def suspend(self, wallet_address: Optional[str], reason: Optional[str] = None) -> Dict[str, Any]:
        """Manually suspend a verified institution and revoke its credential."""
        wallet = canonical_wallet(wallet_address)
        with self.db.session_scope() as session:
            institution = self._load(session, wallet)
            revoke_owed = self._suspend(session, institution, KybAction.MANUAL_SUSPEND, note=reason)

        logger.warning("Institution suspended manually: wallet=%s", wallet)
        result: Dict[str, Any] = {
            "ok": True,
            "wallet": wallet,
            "kybStatus": KybStatus.SUSPENDED.value,
            "revokePending": revoke_owed,
            "revokeTxHash": None,
        }
        if revoke_owed:
            try:
                result["revokeTxHash"] = self.complete_revocation(wallet)
                result["revokePending"] = False
            except ProviderError as e:
                result["error"] = {"kind": e.code, "message": e.message}
        return result

    def apply_sanction_hit(
        self,
        wallet: str,
        search_id: Optional[str],
        matches: List[Dict[str, Any]],
    ) -> bool:
        """
        Suspend a verified institution after a sanctions hit.

        Returns:
            False if the institution is no longer verified (nothing written)
        """
        with self.db.session_scope() as session:
            institution = InstitutionRepository(session).get_by_wallet(wallet, for_update=True)
            if institution is None or institution.kyb_status != KybStatus.VERIFIED:
                logger.info("Sanction hit ignored, institution no longer verified: wallet=%s", wallet)
                return False

            institution.sanction_hit = True
            institution.sanction_hit_details = matches
            institution.last_screened_at = self._now()
            self._suspend(
                session,
                institution,
                KybAction.SANCTION_HIT,
                meta={"searchId": search_id, "topMatches": matches},
            )

        logger.warning("Sanction hit, institution suspended: wallet=%s search=%s", wallet, search_id)
        return True

    def complete_revocation(self, wallet: str) -> Optional[str]:
        """
        Revoke the on-chain credential of a suspended institution and clear
        its ``revoke_pending`` flag.

        Raises:
            ProviderError: If the revoke fails; the flag stays set
        """
        tx_hash = self.synchronizer.revoke(wallet)
        with self.db.session_scope() as session:
            institution = self._load(session, wallet)
            if not institution.revoke_pending:
                return tx_hash
            institution.revoke_pending = False
            audit.append(
                session,
                wallet,
                KybAction.ONCHAIN_REVOKE,
                institution.kyb_status,
                institution.kyb_status,
                meta={"txHash": tx_hash},
            )
        return tx_hash

    # ------------------------------------------------------------------
    # buyer role and reads
    # ------------------------------------------------------------------

    def grant_buyer_role(self, wallet_address: Optional[str]) -> Dict[str, Any]:
        wallet = canonical_wallet(wallet_address)
        with self.db.session_scope() as session:
            status = self._load(session, wallet, for_update=False).kyb_status

        tx_hash = self.synchronizer.grant_buyer_role(wallet, status)

        with self.db.session_scope() as session:
            audit.append(
                session, wallet, KybAction.GRANT_BUYER_ROLE, status, status, meta={"txHash": tx_hash}
            )
        logger.info("Buyer role granted: wallet=%s tx=%s", wallet, tx_hash)
        return {"ok": True, "wallet": wallet, "txHash": tx_hash}

    def get_status(self, wallet_address: Optional[str]) -> Dict[str, Any]:
        """
        Compliance fields for a wallet, or ``{"kybStatus": "not_found"}``.

        A verified record whose on-chain flag is unset is checked against the
        registry and healed if the credential is actually present.
        """
        wallet = canonical_wallet(wallet_address)
        with self.db.session_scope() as session:
            institution = InstitutionRepository(session).get_by_wallet(wallet)
            if institution is None:
                return {"kybStatus": KybStatus.NOT_FOUND.value}
            status = institution.to_status_dict()
            needs_check = (
                institution.kyb_status == KybStatus.VERIFIED
                and not institution.on_chain_verified
                and not institution.revoke_pending
            )

        if not needs_check:
            return status

        try:
            on_chain = self.synchronizer.registry.is_verified(wallet)
        except ProviderError as e:
            logger.debug("On-chain status check failed for %s, keeping stored value: %s", wallet, e)
            return status

        if on_chain:
            with self.db.session_scope() as session:
                institution = self._load(session, wallet)
                if institution.kyb_status == KybStatus.VERIFIED and not institution.revoke_pending:
                    institution.on_chain_verified = True
                    status["onChainVerified"] = True
                    logger.info("Healed on-chain flag from registry: wallet=%s", wallet)
        return status

    def history(self, wallet_address: Optional[str]) -> List[Dict[str, Any]]:
        wallet = canonical_wallet(wallet_address)
        with self.db.session_scope() as session:
            return [entry.to_dict() for entry in audit.history(session, wallet)]
