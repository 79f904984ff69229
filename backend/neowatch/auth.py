import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from neowatch.config import JWT_ALGORITHM, JWT_SECRET
from neowatch.db import get_db
from neowatch.models import User

# Tokens are issued by the account service; this module only verifies them.
security = HTTPBearer(auto_error=False)


def decode_token(token: str) -> dict:
    return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])


def user_id_from_token(token: str) -> int:
    payload = decode_token(token)
    return int(payload.get('sub'))


def get_token_payload(creds: HTTPAuthorizationCredentials | None = Depends(security)) -> dict:
    if not creds or not creds.credentials:
        raise HTTPException(status_code=401, detail={'error': 'AUTH_REQUIRED', 'message': 'Missing bearer token'})
    try:
        payload = decode_token(creds.credentials)
        int(payload.get('sub'))
    except (jwt.InvalidTokenError, ValueError, TypeError):
        raise HTTPException(status_code=401, detail={'error': 'INVALID_TOKEN', 'message': 'Token is invalid or expired'})
    return payload


def get_current_user(payload: dict = Depends(get_token_payload), db: Session = Depends(get_db)) -> User:
    user = db.query(User).filter(User.id == int(payload['sub'])).first()
    if not user:
        raise HTTPException(status_code=401, detail={'error': 'INVALID_TOKEN', 'message': 'User not found'})
    return user


def require_admin(payload: dict = Depends(get_token_payload)) -> dict:
    if payload.get('role') != 'admin':
        raise HTTPException(status_code=403, detail={'error': 'ADMIN_REQUIRED', 'message': 'Admin access required'})
    return payload
