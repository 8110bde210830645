# timbrado/infrastructure/dependencies.py
from functools import lru_cache

import config
from timbrado.application.services.canonicalizer import Canonicalizer
from timbrado.application.services.credential_store import CredentialStore
from timbrado.application.services.signer import Signer
from timbrado.application.use_cases.provision_credential import ProvisionCredentialUseCase
from timbrado.application.use_cases.stamping_orchestrator import StampingOrchestrator
from timbrado.domain.models.stamping import RetryPolicy
from timbrado.infrastructure.external.finkok_adapter import FinkokAdapter
from timbrado.infrastructure.persistence.credential_repository_adapter import SQLAlchemyCredentialRepository
from timbrado.infrastructure.persistence.database import init_db
from timbrado.infrastructure.persistence.stamping_repository_adapter import SQLAlchemyStampingRepository
from timbrado.infrastructure.xml.transform_registry import TransformRegistry

# Una sola instancia por proceso: el orquestador y el almacén de CSD
# guardan los candados por documento y por RFC.


@lru_cache()
def get_transform_registry() -> TransformRegistry:
    return TransformRegistry(config.CFDI_TRANSFORMS_DIR, hot_reload=config.CFDI_TRANSFORMS_HOT_RELOAD)


@lru_cache()
def get_canonicalizer() -> Canonicalizer:
    return Canonicalizer(get_transform_registry())


@lru_cache()
def get_pac_gateway() -> FinkokAdapter:
    return FinkokAdapter()


@lru_cache()
def get_credential_store() -> CredentialStore:
    init_db()
    return CredentialStore(SQLAlchemyCredentialRepository(), pac_gateway=get_pac_gateway())


@lru_cache()
def get_orchestrator() -> StampingOrchestrator:
    init_db()
    return StampingOrchestrator(
        credential_store=get_credential_store(),
        signer=Signer(get_canonicalizer()),
        pac_gateway=get_pac_gateway(),
        repository=SQLAlchemyStampingRepository(),
        retry_policy=RetryPolicy(
            max_attempts=config.STAMP_MAX_ATTEMPTS,
            base_delay=config.STAMP_BACKOFF_BASE_SECONDS,
            multiplier=config.STAMP_BACKOFF_MULTIPLIER,
            max_delay=config.STAMP_BACKOFF_MAX_SECONDS,
        ),
    )


def get_provisioning() -> ProvisionCredentialUseCase:
    return ProvisionCredentialUseCase(get_credential_store(), get_pac_gateway())
