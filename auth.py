"""Firebase initialization and request authentication."""

import os
from typing import Optional

import firebase_admin
from firebase_admin import auth, credentials, firestore
from fastapi import Depends, Header, HTTPException

from config import get_logger, FIRESTORE_DATABASE_ID

logger = get_logger(__name__)


def initialize_firebase(database_id: Optional[str] = FIRESTORE_DATABASE_ID):
    """Initialize the Firebase Admin SDK and return a Firestore client.

    Returns None when Firebase cannot be initialized; callers decide how to
    degrade.
    """
    try:
        if not firebase_admin._apps:
            # Application Default Credentials unless a key file is configured
            cred = credentials.Certificate(os.getenv("GOOGLE_APPLICATION_CREDENTIALS")) if "GOOGLE_APPLICATION_CREDENTIALS" in os.environ else None
            firebase_app = firebase_admin.initialize_app(cred)
            logger.info("Firebase Admin SDK initialized successfully")
        else:
            firebase_app = firebase_admin.get_app()
            logger.info("Firebase Admin SDK already initialized")
    except Exception as e:
        logger.error(f"Failed to initialize Firebase Admin SDK: {e}")
        logger.warning("Authentication and entitlement storage will be unavailable")
        return None

    try:
        if database_id:
            logger.info(f"Using Firestore database ID: {database_id}")
            return firestore.client(app=firebase_app, database_id=database_id)
        logger.warning("FIRESTORE_DATABASE_ID not set, using default database")
        return firestore.client(app=firebase_app)
    except Exception as e:
        logger.error(f"Failed to initialize Firestore: {e}")
        return None


async def verify_firebase_token(authorization: str = Header(None)):
    """Verify Firebase ID token and return user info"""
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header missing")

    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header format")

    token = authorization.split(" ")[1]

    try:
        decoded_token = auth.verify_id_token(token)
    except Exception as e:
        logger.error(f"Token verification failed: {e}")
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user_id = decoded_token.get('uid')
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token - no user ID")

    logger.debug(f"Token verified for user: {user_id}")
    return {
        "uid": user_id,
        "email": decoded_token.get('email'),
        "decoded_token": decoded_token
    }


async def require_non_anonymous_user(user_info: dict = Depends(verify_firebase_token)):
    """Dependency that requires a non-anonymous authenticated user."""
    decoded_token = user_info.get('decoded_token')
    firebase_info = decoded_token.get('firebase') if isinstance(decoded_token, dict) else None

    if not isinstance(firebase_info, dict):
        raise HTTPException(
            status_code=403,
            detail="User authentication data unavailable"
        )

    if firebase_info.get('sign_in_provider') == 'anonymous':
        raise HTTPException(
            status_code=403,
            detail="Anonymous users cannot manage subscriptions"
        )

    return user_info
