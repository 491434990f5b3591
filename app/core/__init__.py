"""
Shared building blocks for the deliveries and escrow apps.

Nothing here knows about payments or deliveries:

- core.models: BaseModel (created_at / updated_at)
- core.model_mixins: UUIDPrimaryKeyMixin
- core.services: BaseService, ServiceResult
- core.exceptions: BaseApplicationError and its HTTP-mapped families
- core.views: health_check
"""
