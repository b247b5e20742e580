"""Authentication primitives.

Learn: everything here is storage-free:
1. tokens: mint/validate RS256 access tokens (CredentialIssuer)
2. hashing: refresh-token and verification-code secrets
3. apple: Sign in with Apple identity-token verification
4. dependencies: FastAPI Bearer auth → typed CurrentUser
"""
