"""keygate models package.

  - errors.py: GatewayError taxonomy and build_error_response()
"""
