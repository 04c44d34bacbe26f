import os
from jose import jwt, JWTError
from datetime import datetime, timedelta
from fastapi import Depends, HTTPException, WebSocket
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from .errors import AuthenticationFailure

# Prefer JWT_SECRET but support legacy JWT_SECRET_KEY for compatibility
SECRET = os.getenv('JWT_SECRET') or os.getenv('JWT_SECRET_KEY', 'devsecret')
ALGORITHM = os.getenv('JWT_ALGORITHM', 'HS256')
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv('ACCESS_TOKEN_EXPIRE_MINUTES', str(60 * 24 * 7)))

bearer_scheme = HTTPBearer(auto_error=False)

def create_access_token(data: dict, expires_delta: timedelta = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({'exp': expire})
    encoded = jwt.encode(to_encode, SECRET, algorithm=ALGORITHM)
    return encoded

def decode_token(token: str):
    try:
        payload = jwt.decode(token, SECRET, algorithms=[ALGORITHM])
    except JWTError:
        return None
    # identity claim is mandatory
    if payload.get('id') is None:
        return None
    return payload

async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme)) -> dict:
    if credentials is None:
        raise HTTPException(status_code=401, detail='Not authenticated')
    payload = decode_token(credentials.credentials)
    if not payload:
        raise HTTPException(status_code=401, detail='Invalid or expired token')
    return {'id': int(payload['id']), 'role': payload.get('role', 'member')}

async def require_admin(current_user: dict = Depends(get_current_user)) -> dict:
    if current_user['role'] != 'admin':
        raise HTTPException(status_code=403, detail='Admin access required')
    return current_user

def authenticate_websocket(websocket: WebSocket, token: str | None = None) -> dict:
    """Resolve the handshake credential from ?token= or the Authorization header"""
    if not token:
        header = websocket.headers.get('authorization', '')
        scheme, _, value = header.partition(' ')
        if scheme.lower() == 'bearer':
            token = value.strip()
    if not token:
        raise AuthenticationFailure('missing credential')
    payload = decode_token(token)
    if not payload:
        raise AuthenticationFailure('invalid credential')
    return {'id': int(payload['id']), 'role': payload.get('role', 'member')}
