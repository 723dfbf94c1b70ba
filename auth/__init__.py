"""
auth — API caller authentication.

Provides:
  • Signed bearer token creation & verification
  • ``get_current_principal`` / ``require_integration_admin`` FastAPI dependencies
"""
