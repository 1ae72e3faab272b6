from certchain.systems.registration.service import (
    InstituteDirectory,
    InstituteListing,
    RegistrationResult,
    RegistrationService,
)

__all__ = ["InstituteDirectory", "InstituteListing", "RegistrationResult", "RegistrationService"]
