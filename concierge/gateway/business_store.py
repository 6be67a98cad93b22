"""Read-only business profile lookups"""

from typing import Dict, Any, List, Optional
import structlog

from ..errors import NotFoundError
from ..rag.models import BusinessFacts

logger = structlog.get_logger(__name__)


class BusinessStore:
    """In-memory business facts keyed by business id"""

    def __init__(self, businesses: Optional[List[BusinessFacts]] = None):
        self.businesses: Dict[str, BusinessFacts] = {}
        for business in businesses or []:
            self.register(business)

    def register(self, business: BusinessFacts):
        self.businesses[business.business_id] = business
        logger.info("Business registered", business_id=business.business_id, name=business.name)

    async def get_business(self, business_id: str) -> BusinessFacts:
        business = self.businesses.get(business_id)
        if business is None:
            raise NotFoundError(f"Business {business_id} not found")
        return business

    async def get_facts(self, business_id: str) -> Dict[str, Any]:
        """Hours, location and specials flattened for rule conditions"""
        business = await self.get_business(business_id)
        return {
            "name": business.name,
            "business_type": business.business_type,
            "current_hours": business.hours,
            "is_open": business.is_open,
            "location": business.location,
            "phone": business.phone,
            "promotions": list(business.specials),
            "policies": list(business.policies),
        }
