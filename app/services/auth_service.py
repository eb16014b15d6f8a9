from __future__ import annotations

from sqlalchemy import delete, func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.domain.authorization import authorize_session_access
from app.domain.errors import AuthError, ConflictError, ForbiddenError, NotFoundError, ValidationError
from app.domain.identity import CallerIdentity
from app.domain.models import (
    AuthSession,
    BootstrapRequest,
    ChangePasswordRequest,
    Company,
    CompanySummary,
    LoginRequest,
    LoginResponse,
    LoginUserRead,
    MeRead,
    SessionRead,
    TokenPair,
    User,
    UserCompany,
    UserStatus,
    as_utc,
    now_utc,
)
from app.domain.permissions import Role, creatable_roles, get_max_creatable_role
from app.infra.auth import (
    create_token_pair,
    decode_refresh_token,
    hash_password,
    refresh_expiry,
    verify_password,
)
from app.infra.db import get_engine
from app.infra.events import event_bus

INVALID_CREDENTIALS = "Invalid email or password"


class AuthService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _company_ids(self, session: Session, user_id: str) -> list[str]:
        return list(
            session.exec(
                select(UserCompany.company_id)
                .join(Company, col(Company.id) == col(UserCompany.company_id))
                .where(UserCompany.user_id == user_id)
                .where(Company.deleted == False)  # noqa: E712
                .order_by(col(UserCompany.position))
            ).all()
        )

    def _get_live_user(self, session: Session, user_id: str) -> User:
        user = session.get(User, user_id)
        if user is None or user.deleted:
            raise NotFoundError("User not found")
        return user

    def _issue_session(self, session: Session, user: User, company_ids: list[str]) -> TokenPair:
        pair = create_token_pair(
            user_id=user.id,
            email=user.email,
            role=str(user.role),
            company_ids=company_ids,
            primary_company_id=user.primary_company_id,
        )
        session.add(
            AuthSession(
                user_id=user.id,
                token=pair["access_token"],
                refresh_token=pair["refresh_token"],
                expires_at=refresh_expiry(),
            )
        )
        return TokenPair(**pair)

    def _login_user(self, user: User, company_ids: list[str]) -> LoginUserRead:
        return LoginUserRead(
            id=user.id,
            name=user.name,
            email=user.email,
            role=user.role,
            status=user.status,
            company_ids=company_ids,
            primary_company_id=user.primary_company_id,
        )

    def bootstrap(self, payload: BootstrapRequest) -> LoginUserRead:
        with self._session() as session:
            existing = session.exec(select(func.count()).select_from(User)).one()
            if int(existing) > 0:
                raise ConflictError("System already initialized")
            user = User(
                name=payload.name,
                email=payload.email,
                password_hash=hash_password(payload.password),
                role=Role.SUPER_ADMIN,
                status=UserStatus.VALIDATED,
            )
            session.add(user)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("System already initialized") from exc
            session.refresh(user)

        event_bus.publish_dict("user.created", None, {"user_id": user.id, "role": str(user.role)}, actor_id=user.id)
        return self._login_user(user, [])

    def login(self, payload: LoginRequest) -> LoginResponse:
        with self._session() as session:
            user = session.exec(
                select(User).where(User.email == payload.email).where(User.deleted == False)  # noqa: E712
            ).first()
            if user is None:
                raise AuthError(INVALID_CREDENTIALS)
            if user.status == UserStatus.SUSPENDED:
                raise ForbiddenError("Your account has been suspended. Please contact support.")
            if not verify_password(payload.password, user.password_hash):
                raise AuthError(INVALID_CREDENTIALS)

            session.execute(
                delete(AuthSession)
                .where(col(AuthSession.user_id) == user.id)
                .where(col(AuthSession.expires_at) < now_utc())
            )
            company_ids = self._company_ids(session, user.id)
            tokens = self._issue_session(session, user, company_ids)
            session.commit()
            return LoginResponse(user=self._login_user(user, company_ids), tokens=tokens)

    def refresh(self, refresh_token: str) -> TokenPair:
        decode_refresh_token(refresh_token)
        with self._session() as session:
            stored = session.exec(select(AuthSession).where(AuthSession.refresh_token == refresh_token)).first()
            if stored is None:
                raise AuthError("Invalid refresh token")
            if as_utc(stored.expires_at) < now_utc():
                session.delete(stored)
                session.commit()
                raise AuthError("Refresh token has expired")
            user = session.get(User, stored.user_id)
            if user is None or user.deleted:
                raise AuthError("User account not found")
            if user.status == UserStatus.SUSPENDED:
                raise ForbiddenError("Your account has been suspended")

            company_ids = self._company_ids(session, user.id)
            pair = create_token_pair(
                user_id=user.id,
                email=user.email,
                role=str(user.role),
                company_ids=company_ids,
                primary_company_id=user.primary_company_id,
            )
            stored.token = pair["access_token"]
            stored.refresh_token = pair["refresh_token"]
            stored.expires_at = refresh_expiry()
            session.add(stored)
            session.commit()
        return TokenPair(**pair)

    def logout(self, refresh_token: str) -> None:
        with self._session() as session:
            session.execute(delete(AuthSession).where(col(AuthSession.refresh_token) == refresh_token))
            session.commit()

    def logout_all(self, caller: CallerIdentity) -> None:
        with self._session() as session:
            session.execute(delete(AuthSession).where(col(AuthSession.user_id) == caller.id))
            session.commit()

    def change_password(self, caller: CallerIdentity, payload: ChangePasswordRequest) -> None:
        with self._session() as session:
            user = self._get_live_user(session, caller.id)
            if not verify_password(payload.current_password, user.password_hash):
                raise ValidationError("Current password is incorrect")
            if verify_password(payload.new_password, user.password_hash):
                raise ValidationError("New password must be different from current password")
            user.password_hash = hash_password(payload.new_password)
            user.updated_at = now_utc()
            session.add(user)
            session.execute(delete(AuthSession).where(col(AuthSession.user_id) == user.id))
            session.commit()

    def me(self, caller: CallerIdentity) -> MeRead:
        with self._session() as session:
            user = self._get_live_user(session, caller.id)
            companies = session.exec(
                select(Company)
                .join(UserCompany, col(UserCompany.company_id) == col(Company.id))
                .where(UserCompany.user_id == user.id)
                .where(Company.deleted == False)  # noqa: E712
                .order_by(col(UserCompany.position))
            ).all()
            return MeRead(
                id=user.id,
                name=user.name,
                email=user.email,
                role=user.role,
                status=user.status,
                position=user.position,
                phone_number=user.phone_number,
                primary_company_id=user.primary_company_id,
                companies=[CompanySummary.model_validate(item) for item in companies],
                creatable_roles=creatable_roles(user.role),
                max_creatable_role=get_max_creatable_role(user.role),
            )

    def list_sessions(self, caller: CallerIdentity) -> list[SessionRead]:
        with self._session() as session:
            rows = session.exec(
                select(AuthSession)
                .where(AuthSession.user_id == caller.id)
                .where(col(AuthSession.expires_at) >= now_utc())
                .order_by(col(AuthSession.created_at).desc())
            ).all()
            return [SessionRead.model_validate(item) for item in rows]

    def revoke_session(self, caller: CallerIdentity, session_id: str) -> None:
        with self._session() as session:
            stored = session.get(AuthSession, session_id)
            if stored is None:
                raise NotFoundError("Session not found")
            authorize_session_access(caller, stored.user_id)
            session.delete(stored)
            session.commit()

        event_bus.publish_dict("session.revoked", None, {"session_id": session_id}, actor_id=caller.id)
