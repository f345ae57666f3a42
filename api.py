import logging
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from auth import create_access_token, resolve_user
from book import Book
from borrowing_service import BorrowingService
from config import settings
from database import get_db_connection
from exceptions import ForbiddenError, LibraryError, NotFoundError, UnauthorizedError, ValidationError
from library import Library
from membership_service import MembershipService
from user import User
from utils.dates import utcnow

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

library = Library()
memberships = MembershipService(library)
borrowings = BorrowingService(library, memberships)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("%s %s starting (%s)", settings.app_name, settings.app_version, settings.environment)
    yield
    logger.info("%s shutting down", settings.app_name)

app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
)


# --- Error handling ---
@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(sqlite3.Error)
async def store_error_handler(request: Request, exc: sqlite3.Error):
    logger.exception("Store failure on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Server error", "kind": "server_error"})


# --- Security ---
bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme)) -> User:
    """Dependency resolving the bearer token to a user."""
    return resolve_user(library, credentials.credentials if credentials else None)


def get_admin_user(user: User = Depends(get_current_user)) -> User:
    """Dependency that only lets admins through."""
    if not user.is_admin:
        raise ForbiddenError("Access denied. Admin privileges required.")
    return user


# --- Models ---
class UserModel(BaseModel):
    id: int
    name: str
    email: str
    role: str
    is_admin: bool
    membership_id: int | None = None
    created_at: str | None = None


class RegisterModel(BaseModel):
    name: str
    email: str
    password: str


class LoginModel(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    token: str
    user: UserModel


class UserUpdateModel(BaseModel):
    name: str | None = None
    email: str | None = None
    password: str | None = None
    role: str | None = None


class BookModel(BaseModel):
    id: int
    title: str
    author: str
    serial_number: str
    genre: str | None = None
    total_copies: int
    available_copies: int
    available: bool
    created_at: str | None = None


class BookCreateModel(BaseModel):
    title: str
    author: str
    serial_number: str | None = Field(default=None, description="Generated when omitted")
    genre: str | None = None
    total_copies: int = Field(default=1, ge=0)


class BookUpdateModel(BaseModel):
    title: str | None = None
    author: str | None = None
    serial_number: str | None = None
    genre: str | None = None
    total_copies: int | None = Field(default=None, ge=0)


class MembershipTypeModel(BaseModel):
    id: int | None = None
    name: str
    description: str = ""
    fee: float = 0.0
    benefits: List[str] = []
    max_books: int
    active: bool = True


class MembershipTypeCreateModel(BaseModel):
    name: str
    max_books: int = Field(ge=0)
    description: str = ""
    fee: float = Field(default=0.0, ge=0)
    benefits: List[str] | None = None


class MembershipModel(BaseModel):
    id: int
    membership_number: str
    user_id: int
    type: str
    status: str
    start_date: str | None = None
    valid_until: str
    notes: str | None = None
    processed_by: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


class MembershipApplyModel(BaseModel):
    type: str = "standard"
    duration_months: int = Field(default=settings.default_membership_months, ge=1)
    notes: str | None = None


class ProcessApplicationModel(BaseModel):
    status: str = Field(description="active | rejected")
    notes: str | None = None


class CancelMembershipModel(BaseModel):
    notes: str | None = None


class MembershipUpdateModel(BaseModel):
    type: str | None = None
    status: str | None = None
    start_date: datetime | None = None
    valid_until: datetime | None = None
    notes: str | None = None


class BookSummaryModel(BaseModel):
    id: int
    title: str
    author: str | None = None
    serial_number: str | None = None


class UserSummaryModel(BaseModel):
    id: int
    name: str
    email: str | None = None


class BorrowingModel(BaseModel):
    id: int
    book_id: int
    user_id: int
    book: BookSummaryModel | None = None
    user: UserSummaryModel | None = None
    borrow_date: str
    due_date: str
    return_date: str | None = None
    status: str
    fine_amount: float
    fine_paid: bool
    notes: str | None = None
    processed_by: int
    processed_by_name: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class BorrowRequestModel(BaseModel):
    book_id: int
    due_date: datetime | None = None
    user_id: int | None = Field(default=None, description="Admins may borrow on behalf of a user")


class BorrowingUpdateModel(BaseModel):
    status: str | None = None
    due_date: datetime | None = None
    notes: str | None = None
    fine_amount: float | None = None
    fine_paid: bool | None = None


class BorrowingResponse(BaseModel):
    message: str
    borrowing: BorrowingModel


class PaginatedBorrowings(BaseModel):
    borrowings: List[BorrowingModel]
    total_pages: int
    current_page: int
    total: int


class StatsModel(BaseModel):
    total_books: int
    total_copies: int
    available_copies: int
    total_users: int
    active_memberships: int
    pending_applications: int
    open_borrowings: int
    overdue_borrowings: int
    unpaid_fines: float


# --- Health ---
@app.get("/health")
def health():
    """Lightweight health endpoint: quick database round trip."""
    db_ok = True
    try:
        conn = get_db_connection()
        try:
            conn.execute("SELECT 1")
        finally:
            conn.close()
    except sqlite3.Error:
        logger.exception("Health check could not reach the database")
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": utcnow().isoformat(),
        "db": db_ok,
        "version": settings.app_version,
    }


# --- Auth ---
@app.post("/api/auth/register", response_model=TokenResponse, status_code=201)
def register(payload: RegisterModel):
    user = library.register_user(payload.name, payload.email, payload.password)
    return TokenResponse(token=create_access_token(user), user=UserModel(**user.to_dict()))


@app.post("/api/auth/login", response_model=TokenResponse)
def login(payload: LoginModel):
    user = library.authenticate(payload.email, payload.password)
    if not user:
        raise UnauthorizedError("Invalid credentials")
    return TokenResponse(token=create_access_token(user), user=UserModel(**user.to_dict()))


@app.get("/api/auth/profile", response_model=UserModel)
def profile(user: User = Depends(get_current_user)):
    return UserModel(**user.to_dict())


# --- Users (admin) ---
@app.get("/api/users", response_model=List[UserModel])
def list_users(admin: User = Depends(get_admin_user)):
    return [UserModel(**u.to_dict()) for u in library.list_users()]


@app.get("/api/users/{user_id}", response_model=UserModel)
def get_user(user_id: int, user: User = Depends(get_current_user)):
    if not user.is_admin and user.id != user_id:
        raise ForbiddenError("Access denied. You can only view your own profile.")
    return UserModel(**library.get_user(user_id).to_dict())


@app.put("/api/users/{user_id}", response_model=UserModel)
def update_user(user_id: int, update: UserUpdateModel, user: User = Depends(get_current_user)):
    updated = library.update_user(user, user_id, **update.model_dump(exclude_unset=True))
    return UserModel(**updated.to_dict())


@app.delete("/api/users/{user_id}")
def delete_user(user_id: int, admin: User = Depends(get_admin_user)):
    library.remove_user(admin, user_id)
    return {"message": "User removed"}


# --- Books ---
@app.get("/api/books", response_model=List[BookModel])
def get_books(q: Optional[str] = Query(None, description="Search by title, author or serial number")):
    books = library.search_books(q) if q else library.list_books()
    return [BookModel(**b.to_dict()) for b in books]


@app.get("/api/books/{book_id}", response_model=BookModel)
def get_book(book_id: int):
    return BookModel(**library.get_book(book_id).to_dict())


@app.post("/api/books", response_model=BookModel, status_code=201)
def add_book(payload: BookCreateModel, admin: User = Depends(get_admin_user)):
    book = library.add_book(Book(
        title=payload.title,
        author=payload.author,
        serial_number=payload.serial_number,
        genre=payload.genre,
        total_copies=payload.total_copies,
    ))
    return BookModel(**book.to_dict())


@app.put("/api/books/{book_id}", response_model=BookModel)
def update_book(book_id: int, update: BookUpdateModel, admin: User = Depends(get_admin_user)):
    book = library.update_book(book_id, **update.model_dump(exclude_unset=True))
    return BookModel(**book.to_dict())


@app.delete("/api/books/{book_id}")
def delete_book(book_id: int, admin: User = Depends(get_admin_user)):
    if not library.remove_book(book_id):
        raise NotFoundError("Book not found")
    return {"message": "Book removed"}


# --- Membership types ---
@app.get("/api/membership-types", response_model=List[MembershipTypeModel])
def get_membership_types():
    return [MembershipTypeModel(**t.to_dict()) for t in memberships.list_membership_types()]


@app.post("/api/membership-types", response_model=MembershipTypeModel, status_code=201)
def create_membership_type(payload: MembershipTypeCreateModel, admin: User = Depends(get_admin_user)):
    membership_type = memberships.create_membership_type(admin, **payload.model_dump())
    return MembershipTypeModel(**membership_type.to_dict())


# --- Memberships ---
@app.post("/api/memberships/apply", response_model=MembershipModel, status_code=201)
def apply_for_membership(payload: MembershipApplyModel, user: User = Depends(get_current_user)):
    membership = memberships.apply_for_membership(user, payload.type, payload.duration_months, payload.notes)
    return MembershipModel(**membership.to_dict())


@app.get("/api/memberships/me", response_model=MembershipModel)
def get_my_membership(user: User = Depends(get_current_user)):
    membership = memberships.get_user_membership(user)
    if membership is None:
        raise NotFoundError("No membership found for this user")
    return MembershipModel(**membership.to_dict())


@app.get("/api/memberships", response_model=List[MembershipModel])
def list_memberships(
    status: Optional[str] = Query(None, description="pending|active|rejected|expired|cancelled"),
    user_id: Optional[int] = Query(None),
    admin: User = Depends(get_admin_user),
):
    return [MembershipModel(**m.to_dict()) for m in memberships.list_memberships(status, user_id)]


@app.get("/api/memberships/{membership_id}", response_model=MembershipModel)
def get_membership(membership_id: int, user: User = Depends(get_current_user)):
    membership = memberships.get_membership(membership_id)
    if not user.is_admin and membership.user_id != user.id:
        raise ForbiddenError("Not authorized to view this membership")
    return MembershipModel(**membership.to_dict())


@app.put("/api/memberships/{membership_id}/cancel", response_model=MembershipModel)
def cancel_membership(membership_id: int, payload: CancelMembershipModel | None = None,
                      user: User = Depends(get_current_user)):
    membership = memberships.cancel_membership(user, membership_id, payload.notes if payload else None)
    return MembershipModel(**membership.to_dict())


@app.put("/api/memberships/{membership_id}", response_model=MembershipModel)
def update_membership(membership_id: int, update: MembershipUpdateModel, admin: User = Depends(get_admin_user)):
    """Admin edit of a membership's type, dates or status (renewal, extension, reinstatement)."""
    patch: Dict[str, Any] = update.model_dump(exclude_unset=True)
    if not patch:
        raise ValidationError("Provide at least one field to update.")
    membership = memberships.update_membership(admin, membership_id, **patch)
    return MembershipModel(**membership.to_dict())


@app.get("/api/admin/memberships/pending", response_model=List[MembershipModel])
def get_pending_applications(admin: User = Depends(get_admin_user)):
    return [MembershipModel(**m.to_dict()) for m in memberships.list_pending_applications()]


@app.put("/api/admin/memberships/process/{membership_id}", response_model=MembershipModel)
def process_membership_application(membership_id: int, payload: ProcessApplicationModel,
                                   admin: User = Depends(get_admin_user)):
    membership = memberships.process_membership_application(admin, membership_id, payload.status, payload.notes)
    return MembershipModel(**membership.to_dict())


# --- Borrowings ---
def _borrowing_model(borrowing) -> BorrowingModel:
    return BorrowingModel(**borrowing.to_dict())


@app.post("/api/borrowings/borrow", response_model=BorrowingResponse, status_code=201)
def borrow_book(payload: BorrowRequestModel, user: User = Depends(get_current_user)):
    borrower = user
    if payload.user_id is not None and payload.user_id != user.id:
        if not user.is_admin:
            raise ForbiddenError("Only admins can borrow on behalf of another user")
        borrower = library.get_user(payload.user_id)
    borrowing = borrowings.borrow(borrower, payload.book_id, payload.due_date, actor=user)
    return BorrowingResponse(message="Book borrowed successfully", borrowing=_borrowing_model(borrowing))


@app.put("/api/borrowings/return/{borrowing_id}", response_model=BorrowingResponse)
def return_book(borrowing_id: int, user: User = Depends(get_current_user)):
    borrowing = borrowings.return_book(user, borrowing_id)
    return BorrowingResponse(message="Book returned successfully", borrowing=_borrowing_model(borrowing))


@app.put("/api/borrowings/pay-fine/{borrowing_id}", response_model=BorrowingResponse)
def pay_fine(borrowing_id: int, user: User = Depends(get_current_user)):
    borrowing = borrowings.pay_fine(user, borrowing_id)
    return BorrowingResponse(message="Fine paid successfully", borrowing=_borrowing_model(borrowing))


@app.get("/api/borrowings/user", response_model=List[BorrowingModel])
def get_user_borrowings(status: Optional[str] = Query(None), user: User = Depends(get_current_user)):
    return [_borrowing_model(b) for b in borrowings.list_user_borrowings(user, status)]


@app.get("/api/borrowings/all", response_model=PaginatedBorrowings)
def get_all_borrowings(
    page: int = Query(1, ge=1, description="Page number"),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size, description="Items per page"),
    status: Optional[str] = Query(None),
    user_id: Optional[int] = Query(None),
    book_id: Optional[int] = Query(None),
    overdue: bool = Query(False),
    admin: User = Depends(get_admin_user),
):
    result = borrowings.list_borrowings(status=status, user_id=user_id, book_id=book_id,
                                        overdue=overdue, page=page, limit=limit)
    return PaginatedBorrowings(
        borrowings=[_borrowing_model(b) for b in result["borrowings"]],
        total_pages=result["total_pages"],
        current_page=result["current_page"],
        total=result["total"],
    )


@app.get("/api/borrowings/{borrowing_id}", response_model=BorrowingModel)
def get_borrowing(borrowing_id: int, user: User = Depends(get_current_user)):
    return _borrowing_model(borrowings.get_borrowing(user, borrowing_id))


@app.put("/api/borrowings/{borrowing_id}", response_model=BorrowingModel)
def update_borrowing(borrowing_id: int, update: BorrowingUpdateModel, admin: User = Depends(get_admin_user)):
    patch: Dict[str, Any] = update.model_dump(exclude_unset=True)
    if not patch:
        raise ValidationError("Provide at least one field to update.")
    return _borrowing_model(borrowings.update_borrowing(admin, borrowing_id, patch))


# --- Reporting ---
@app.get("/api/stats", response_model=StatsModel)
def get_library_stats(admin: User = Depends(get_admin_user)):
    """Basic statistics about the library."""
    return StatsModel(**library.get_statistics())
