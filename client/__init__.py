from .csrf_manager import CsrfTokenManager, CsrfTokenError
