from .dependencies import get_current_user
from .jwt_verifier import AuthenticatedUser, JWTVerifier, get_jwt_verifier

__all__ = ["AuthenticatedUser", "JWTVerifier", "get_current_user", "get_jwt_verifier"]
