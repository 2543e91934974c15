# Import specific services where needed:
# from services.auth import AuthService, build_auth_service
# from services.refresh_store import RefreshTokenStore
# from services.rotation import RotationManager

__all__ = []
