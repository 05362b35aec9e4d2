"""
Typed failures for the merchant map learning subsystem

Lookup-path failures (MappingStoreError, MalformedMappingError) are degraded:
the receipt keeps its AI categorization. Write-path failures
(MappingWriteError) propagate so the user sees their correction did not save.
"""


class MerchantMapError(Exception):
    """Base class for merchant map failures"""


class MappingStoreError(MerchantMapError):
    """Mapping store unreachable or query failed"""


class MalformedMappingError(MappingStoreError):
    """Row returned by the mapping store failed validation"""


class MappingWriteError(MerchantMapError):
    """Saving or deleting a mapping failed; safe to retry"""

    retryable = True

    def __init__(self, message: str, tenant_id: str, merchant_name: str):
        super().__init__(message)
        self.tenant_id = tenant_id
        self.merchant_name = merchant_name
