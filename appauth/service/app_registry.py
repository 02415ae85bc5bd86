from __future__ import annotations

from typing import Dict, List, Mapping, Optional

from appauth.service.errors import InvalidAppEndpoint
from appauth.storage.models import Role

BUSINESS_APP = "sera-food-business-app"

# Exact endpoint strings, scheme/host/port included. New apps are added here
# or through APP_ENDPOINTS, never by pattern.
DEFAULT_APP_ENDPOINTS: Dict[str, str] = {
    "https://food-delivery-app-frontend.vercel.app": "sera-food-customer-app",
    "https://food-delivery-business-app-sera.vercel.app": BUSINESS_APP,
    "https://todo-frontend-beta-three-78.vercel.app": "todo-app",
    "http://localhost:5173": "sera-food-customer-app",
    "http://localhost:5174": BUSINESS_APP,
    "http://localhost:3000": "todo-app",
}


class AppRegistry:
    """Static endpoint -> app identifier table."""

    def __init__(self, extra_endpoints: Optional[Mapping[str, str]] = None) -> None:
        self._endpoints: Dict[str, str] = dict(DEFAULT_APP_ENDPOINTS)
        if extra_endpoints:
            self._endpoints.update(extra_endpoints)

    def resolve(self, endpoint: Optional[str]) -> Optional[str]:
        if not endpoint:
            return None
        return self._endpoints.get(endpoint)

    def require(self, endpoint: Optional[str]) -> str:
        app_identifier = self.resolve(endpoint)
        if app_identifier is None:
            raise InvalidAppEndpoint(endpoint)
        return app_identifier

    @staticmethod
    def is_valid_role(role: str) -> bool:
        return role in {r.value for r in Role}

    def is_valid_app(self, app_identifier: str) -> bool:
        return app_identifier in self._endpoints.values()

    def app_identifiers(self) -> List[str]:
        return sorted(set(self._endpoints.values()))

    def supported_endpoints(self) -> List[str]:
        return list(self._endpoints.keys())

    @staticmethod
    def default_roles(app_identifier: str) -> List[str]:
        if app_identifier == BUSINESS_APP:
            return [Role.BUSINESS_USER.value]
        return [Role.USER.value]

    def endpoint_for(self, app_identifier: str) -> Optional[str]:
        """First registered endpoint for an app, used for OAuth redirects."""
        for endpoint, identifier in self._endpoints.items():
            if identifier == app_identifier:
                return endpoint
        return None
