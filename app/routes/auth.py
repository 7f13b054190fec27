from datetime import datetime
from fastapi import APIRouter, Depends, HTTPException, status, Request, Form
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from app.db import get_db
from app.models import User
from app.services.auth_service import authenticate_user, create_access_token, get_current_user_from_cookie
from app.logging_config import auth_logger

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login")
async def login_user(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    db: Session = Depends(get_db)
):
    """
    Аутентификация пользователя, токен кладётся в cookie access_token
    """
    client_ip = request.client.host if request.client else "unknown"
    auth_logger.info(f"Login attempt for user: {username} from IP {client_ip}")

    user = authenticate_user(db, username, password)
    if not user:
        auth_logger.warning(f"Failed login attempt for user: {username} from IP {client_ip}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user.last_login_at = datetime.utcnow()
    db.commit()

    access_token = create_access_token({"sub": str(user.id), "username": user.username})
    json_response = JSONResponse(content={
        "message": "Login successful",
        "user_id": user.id,
        "role": user.role.name if user.role else None,
    })
    json_response.set_cookie(key="access_token", value=access_token, httponly=True, samesite="lax")
    auth_logger.info(f"Login successful for user: {username}")
    return json_response


@router.post("/logout")
async def logout_user(request: Request, current_user: User = Depends(get_current_user_from_cookie)):
    """
    Выход пользователя - удаление токена из cookie
    """
    response = JSONResponse(content={"message": "Logged out successfully"})
    response.set_cookie(key="access_token", value="", httponly=True, samesite="lax", max_age=0)
    auth_logger.info(f"User {current_user.username} logged out from IP {request.client.host if request.client else 'unknown'}")
    return response
