from fastapi import Header, HTTPException, Request
from jose import JWTError, jwt

from marketplace.checkout import Actor, Role


def current_actor(request: Request, authorization: str = Header(...)) -> Actor:
    settings = request.app.state.settings
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        claims = jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
        return Actor(user_id=str(claims["sub"]), role=Role(claims["role"]))
    except (ValueError, KeyError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")


def issue_token(secret: str, user_id: str, role: Role) -> str:
    return jwt.encode({"sub": user_id, "role": role.value}, secret, algorithm="HS256")
