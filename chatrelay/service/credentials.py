from __future__ import annotations

import random
from typing import Iterable, List, Optional

from chatrelay.logging import get_logger
from chatrelay.service.errors import NoEligibleCredentialError, NotFoundError
from chatrelay.storage.models import Credential, CredentialStatus, User

logger = get_logger(__name__)


class CredentialPool:
    """Chooses an upstream credential for a (user, model) pair.

    A credential is eligible when it is enabled, lists the model, and
    shares at least one role with the caller. The choice among eligible
    credentials is uniform; there is no fallback credential.
    """

    def __init__(self, store, models: Iterable[str], *, rng: Optional[random.Random] = None) -> None:
        self.store = store
        self.models = list(models)
        self.rng = rng or random.Random()

    @staticmethod
    def _eligible(credential: Credential, user: User, model: str) -> bool:
        return (
            credential.enabled
            and model in credential.models
            and user.has_any_role(credential.roles)
        )

    def eligible(self, user: User, model: str) -> List[Credential]:
        return [c for c in self.store.list_credentials() if self._eligible(c, user, model)]

    def select(self, user: User, model: str) -> Credential:
        candidates = self.eligible(user, model)
        if not candidates:
            logger.warning(
                "credential_unavailable", user_id=user.id, model=model, roles=user.roles
            )
            raise NoEligibleCredentialError(
                f"no credential available for model {model}",
                detail={"model": model},
            )
        credential = self.rng.choice(candidates)
        logger.info(
            "credential_selected",
            user_id=user.id,
            model=model,
            credential_id=credential.id,
            candidates=len(candidates),
        )
        return credential

    def available_models(self, user: User) -> List[dict]:
        """Configured models with how many credentials this user may use for each."""
        credentials = self.store.list_credentials()
        return [
            {
                "model": model,
                "credentials": sum(1 for c in credentials if self._eligible(c, user, model)),
            }
            for model in self.models
        ]

    # admin operations
    def list(self) -> List[Credential]:
        return self.store.list_credentials()

    def upsert(
        self,
        *,
        secret: str,
        models: Iterable[str],
        roles: Iterable[str],
        credential_id: Optional[str] = None,
        remark: str = "",
        base_url: Optional[str] = None,
        status: CredentialStatus = CredentialStatus.ENABLED,
    ) -> Credential:
        credential = Credential.new(secret, models, roles, remark=remark, base_url=base_url)
        if credential_id:
            credential.id = credential_id
        credential.status = CredentialStatus(status)
        saved = self.store.upsert_credential(credential)
        logger.info("credential_upserted", credential_id=saved.id, models=sorted(saved.models))
        return saved

    def set_status(self, credential_id: str, status: CredentialStatus) -> None:
        if not self.store.update_credential_status(credential_id, CredentialStatus(status)):
            raise NotFoundError("credential not found", detail={"id": credential_id})
        logger.info("credential_status_changed", credential_id=credential_id, status=str(CredentialStatus(status).value))
