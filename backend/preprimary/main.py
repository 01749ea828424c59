from __future__ import annotations

import json
import logging
import os
import uuid
from collections import Counter
from datetime import date, datetime
from typing import Optional

import bcrypt
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from pydantic import BaseModel, Field
from sqlalchemy import Date, DateTime, ForeignKey, Integer, String, Text, create_engine, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.inspection import inspect
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .assignments import (
    CLASS_LEVELS,
    AssignmentRejected,
    AssignmentStore,
    EligibilityIndex,
    Persister,
    save_assignments,
)
from .suggestions import SuggestionService


load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./preprimary.db")
SESSION_SECRET = os.getenv("SESSION_SECRET", "change-me")
SESSION_MAX_AGE_SECONDS = int(os.getenv("SESSION_MAX_AGE_SECONDS", str(24 * 60 * 60)))
DEFAULT_PASSWORD = os.getenv("DEFAULT_PASSWORD", "lkg123")
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))
DEEPSEEK_API_KEY = os.getenv("DEEPSEEK_API_KEY") or None
DEEPSEEK_BASE_URL = os.getenv("DEEPSEEK_BASE_URL", "https://api.deepseek.com/v1")
DEEPSEEK_MODEL = os.getenv("DEEPSEEK_MODEL", "deepseek-chat")
AI_TIMEOUT_SECONDS = float(os.getenv("AI_TIMEOUT_SECONDS", "30"))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

LEARNING_ABILITIES = ("Talented", "Average", "Slow Learner")
WRITING_SPEEDS = ("Slow Writing", "Speed Writing")
PROGRESS_RATINGS = ("Excellent", "Good", "Needs Improvement")
PROGRESS_AREAS = ("social_skills", "pre_literacy", "pre_numeracy", "motor_skills", "emotional_development")
PLAN_TYPES = ("Annual", "Monthly", "Weekly")

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

serializer = URLSafeTimedSerializer(SESSION_SECRET, salt="preprimary")


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String, unique=True, index=True)
    password: Mapped[str] = mapped_column(String)
    role: Mapped[str] = mapped_column(String, default="teacher")
    name: Mapped[str] = mapped_column(String)
    assigned_classes_json: Mapped[str] = mapped_column(Text, default="[]")

    @property
    def assigned_classes(self) -> list[str]:
        return json.loads(self.assigned_classes_json or "[]")


class Student(Base):
    __tablename__ = "students"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    age: Mapped[int] = mapped_column(Integer)
    class_level: Mapped[str] = mapped_column(String, index=True)
    learning_ability: Mapped[str] = mapped_column(String)
    writing_speed: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    parent_contact: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    photo_url: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    teacher_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("users.id"), nullable=True, index=True)


class Progress(Base):
    __tablename__ = "progress"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    student_id: Mapped[int] = mapped_column(Integer, ForeignKey("students.id"), index=True)
    entry_date: Mapped[date] = mapped_column("date", Date, default=date.today)
    social_skills: Mapped[str] = mapped_column(String)
    pre_literacy: Mapped[str] = mapped_column(String)
    pre_numeracy: Mapped[str] = mapped_column(String)
    motor_skills: Mapped[str] = mapped_column(String)
    emotional_development: Mapped[str] = mapped_column(String)
    comments: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class TeachingPlan(Base):
    __tablename__ = "teaching_plans"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    type: Mapped[str] = mapped_column(String)
    class_level: Mapped[str] = mapped_column(String, index=True)
    title: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text)
    activities: Mapped[str] = mapped_column(Text)
    goals: Mapped[str] = mapped_column(Text)
    start_date: Mapped[date] = mapped_column(Date)
    end_date: Mapped[date] = mapped_column(Date)
    created_by: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    actor_user_id: Mapped[int] = mapped_column(Integer)
    action: Mapped[str] = mapped_column(String)
    entity_type: Mapped[str] = mapped_column(String)
    entity_id: Mapped[str] = mapped_column(String)
    payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


engine = create_engine(
    DATABASE_URL,
    future=True,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {},
)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
app = FastAPI(title="Pre-primary Records")
app.add_middleware(CORSMiddleware, allow_origins=CORS_ORIGINS, allow_credentials=True, allow_methods=["*"], allow_headers=["*"])
suggestion_service = SuggestionService(DEEPSEEK_API_KEY, DEEPSEEK_BASE_URL, DEEPSEEK_MODEL, timeout=AI_TIMEOUT_SECONDS)


class LoginIn(BaseModel):
    email: str
    password: str


class TeacherIn(BaseModel):
    name: str
    email: str
    password: Optional[str] = None
    assigned_classes: list[str] = Field(default_factory=list)


class TeacherUpdateIn(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    assigned_classes: Optional[list[str]] = None


class StudentIn(BaseModel):
    name: str
    age: int = Field(ge=3, le=5)
    class_level: str
    learning_ability: str
    writing_speed: Optional[str] = None
    parent_contact: Optional[str] = None
    notes: Optional[str] = None
    photo_url: Optional[str] = None
    teacher_id: Optional[int] = None


class StudentPatchIn(BaseModel):
    name: Optional[str] = None
    age: Optional[int] = Field(default=None, ge=3, le=5)
    class_level: Optional[str] = None
    learning_ability: Optional[str] = None
    writing_speed: Optional[str] = None
    parent_contact: Optional[str] = None
    notes: Optional[str] = None
    photo_url: Optional[str] = None
    teacher_id: Optional[int] = None


class AssignIn(BaseModel):
    teacher_id: Optional[int] = None


class BulkAssignIn(BaseModel):
    assignments: dict[int, Optional[int]]


class ProgressIn(BaseModel):
    student_id: int
    entry_date: Optional[date] = None
    social_skills: str
    pre_literacy: str
    pre_numeracy: str
    motor_skills: str
    emotional_development: str
    comments: Optional[str] = None


class ProgressUpdateIn(BaseModel):
    entry_date: Optional[date] = None
    social_skills: Optional[str] = None
    pre_literacy: Optional[str] = None
    pre_numeracy: Optional[str] = None
    motor_skills: Optional[str] = None
    emotional_development: Optional[str] = None
    comments: Optional[str] = None


class TeachingPlanIn(BaseModel):
    type: str
    class_level: str
    title: str
    description: str
    activities: str
    goals: str
    start_date: date
    end_date: date


class TeachingPlanUpdateIn(BaseModel):
    type: Optional[str] = None
    class_level: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    activities: Optional[str] = None
    goals: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class SuggestionIn(BaseModel):
    prompt: str


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user(session_token: Optional[str] = Query(None), db: Session = Depends(get_db)) -> User:
    if not session_token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = serializer.loads(session_token, max_age=SESSION_MAX_AGE_SECONDS)
    except SignatureExpired as exc:
        raise HTTPException(status_code=401, detail="Session expired") from exc
    except BadSignature as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc
    user = db.get(User, payload["user_id"])
    if not user:
        raise HTTPException(status_code=401, detail="Invalid user")
    return user


def require_admin(user: User = Depends(current_user)) -> User:
    if user.role != "admin":
        raise HTTPException(status_code=403, detail="admin role required")
    return user


def write_audit(db: Session, user: User, action: str, entity: str, entity_id: str, payload: Optional[str] = None) -> None:
    db.add(AuditLog(actor_user_id=user.id, action=action, entity_type=entity, entity_id=str(entity_id), payload=payload))
    db.commit()


def serialize(instance):
    return {c.key: getattr(instance, c.key) for c in inspect(instance).mapper.column_attrs}


def serialize_user(user: User) -> dict:
    return {"id": user.id, "email": user.email, "role": user.role, "name": user.name, "assigned_classes": user.assigned_classes}


def hash_password(raw: str) -> str:
    return bcrypt.hashpw(raw.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(raw: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(raw.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def require_choice(value: Optional[str], allowed: tuple[str, ...], field: str) -> None:
    if value not in allowed:
        raise HTTPException(status_code=400, detail=f"{field} must be one of {', '.join(allowed)}")


def normalize_classes(classes: list[str]) -> list[str]:
    for c in classes:
        require_choice(c, CLASS_LEVELS, "assigned_classes")
    return [c for c in CLASS_LEVELS if c in set(classes)]


def validate_student_fields(class_level: str, learning_ability: str, writing_speed: Optional[str]) -> None:
    require_choice(class_level, CLASS_LEVELS, "class_level")
    require_choice(learning_ability, LEARNING_ABILITIES, "learning_ability")
    if writing_speed is None:
        return
    if class_level == "Nursery":
        raise HTTPException(status_code=400, detail="writing_speed is not recorded for Nursery students")
    require_choice(writing_speed, WRITING_SPEEDS, "writing_speed")


def teacher_index(db: Session) -> EligibilityIndex:
    return EligibilityIndex(db.scalars(select(User).where(User.role == "teacher")).all())


def check_teacher_for_class(db: Session, teacher_id: Optional[int], class_level: str) -> None:
    if teacher_id is None:
        return
    teacher = db.get(User, teacher_id)
    if not teacher or teacher.role != "teacher":
        raise HTTPException(status_code=404, detail="Teacher not found")
    if not EligibilityIndex([teacher]).is_eligible(teacher_id, class_level):
        raise HTTPException(status_code=400, detail=f"Teacher is not assigned to the {class_level} class")


def get_teacher_or_404(db: Session, teacher_id: int) -> User:
    teacher = db.get(User, teacher_id)
    if not teacher or teacher.role != "teacher":
        raise HTTPException(status_code=404, detail="Teacher not found")
    return teacher


def get_student_for(db: Session, user: User, student_id: int) -> Student:
    student = db.get(Student, student_id)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found")
    if user.role != "admin" and student.teacher_id != user.id:
        raise HTTPException(status_code=403, detail="Unauthorized access to this student")
    return student


def get_plan_for(db: Session, user: User, plan_id: int) -> TeachingPlan:
    plan = db.get(TeachingPlan, plan_id)
    if not plan:
        raise HTTPException(status_code=404, detail="Teaching plan not found")
    if user.role != "admin" and plan.created_by != user.id:
        raise HTTPException(status_code=403, detail="Unauthorized access to this teaching plan")
    return plan


def validate_ratings(values: dict) -> None:
    for area in PROGRESS_AREAS:
        if area in values and values[area] is not None:
            require_choice(values[area], PROGRESS_RATINGS, area)


def persist_student_teacher(db: Session, student_id: int, teacher_id: Optional[int]) -> None:
    student = db.get(Student, student_id)
    if not student:
        raise LookupError(f"Student {student_id} not found")
    student.teacher_id = teacher_id
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise


def seed_default_users(db: Session) -> dict:
    if db.scalar(select(User).where(User.role == "admin")):
        return {"seeded": 0}
    rows = [
        ("admin@school.com", "Admin User", "admin", []),
        ("teacher1@school.com", "Anita Gurung", "teacher", ["Nursery"]),
        ("teacher2@school.com", "Binay Shrestha", "teacher", ["LKG"]),
        ("teacher3@school.com", "Champa Devi", "teacher", ["UKG"]),
    ]
    for email, name, role, classes in rows:
        db.add(User(email=email, name=name, role=role, password=hash_password(DEFAULT_PASSWORD), assigned_classes_json=json.dumps(classes)))
    db.commit()
    logger.info("Seeded %s default users", len(rows))
    return {"seeded": len(rows)}


@app.on_event("startup")
def startup():
    Base.metadata.create_all(engine)
    with SessionLocal() as db:
        seed_default_users(db)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/api/auth/login")
def login(payload: LoginIn, db: Session = Depends(get_db)):
    user = db.scalar(select(User).where(func.lower(User.email) == payload.email.strip().lower()))
    if not user or not verify_password(payload.password, user.password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"session_token": serializer.dumps({"user_id": user.id}), "role": user.role, "user": serialize_user(user)}


@app.get("/api/auth/me")
def me(user: User = Depends(current_user)):
    return serialize_user(user)


@app.get("/api/teachers")
def list_teachers(db: Session = Depends(get_db), _: User = Depends(require_admin)):
    return [serialize_user(t) for t in db.scalars(select(User).where(User.role == "teacher").order_by(User.name.asc())).all()]


@app.post("/api/teachers", status_code=201)
def create_teacher(payload: TeacherIn, db: Session = Depends(get_db), user: User = Depends(require_admin)):
    email = payload.email.strip().lower()
    if db.scalar(select(User).where(func.lower(User.email) == email)):
        raise HTTPException(status_code=400, detail="Email already registered")
    t = User(
        email=email,
        name=payload.name,
        role="teacher",
        password=hash_password(payload.password or DEFAULT_PASSWORD),
        assigned_classes_json=json.dumps(normalize_classes(payload.assigned_classes)),
    )
    db.add(t)
    db.commit()
    db.refresh(t)
    write_audit(db, user, "CREATE", "Teacher", t.id, json.dumps({"name": t.name, "assigned_classes": t.assigned_classes}))
    return serialize_user(t)


@app.put("/api/teachers/{teacher_id}")
def update_teacher(teacher_id: int, payload: TeacherUpdateIn, db: Session = Depends(get_db), user: User = Depends(require_admin)):
    t = get_teacher_or_404(db, teacher_id)
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("email"):
        email = changes["email"].strip().lower()
        clash = db.scalar(select(User).where(func.lower(User.email) == email, User.id != t.id))
        if clash:
            raise HTTPException(status_code=400, detail="Email already registered")
        t.email = email
    if changes.get("name"):
        t.name = changes["name"]
    if changes.get("password"):
        t.password = hash_password(changes["password"])
    if changes.get("assigned_classes") is not None:
        t.assigned_classes_json = json.dumps(normalize_classes(changes["assigned_classes"]))
    db.commit()
    db.refresh(t)
    write_audit(db, user, "UPDATE", "Teacher", t.id, json.dumps({k: v for k, v in changes.items() if k != "password"}))
    return serialize_user(t)


@app.delete("/api/teachers/{teacher_id}", status_code=204)
def delete_teacher(teacher_id: int, db: Session = Depends(get_db), user: User = Depends(require_admin)):
    t = get_teacher_or_404(db, teacher_id)
    orphaned = db.scalars(select(Student).where(Student.teacher_id == t.id)).all()
    for s in orphaned:
        s.teacher_id = None
    db.delete(t)
    db.commit()
    write_audit(db, user, "DELETE", "Teacher", teacher_id, json.dumps({"unassigned_students": [s.id for s in orphaned]}))


@app.get("/api/students")
def list_students(
    class_level: Optional[str] = None,
    learning_ability: Optional[str] = None,
    teacher_id: Optional[int] = None,
    q: Optional[str] = None,
    sort_by: str = "name",
    order: str = "asc",
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    stmt = select(Student)
    if class_level:
        stmt = stmt.where(Student.class_level == class_level)
    if learning_ability:
        stmt = stmt.where(Student.learning_ability == learning_ability)
    if user.role == "teacher":
        stmt = stmt.where(Student.teacher_id == user.id)
    elif teacher_id is not None:
        stmt = stmt.where(Student.teacher_id == teacher_id)
    if q:
        stmt = stmt.where(Student.name.contains(q))
    if sort_by not in Student.__table__.columns.keys():
        raise HTTPException(status_code=400, detail=f"Cannot sort students by {sort_by}")
    col = getattr(Student, sort_by)
    stmt = stmt.order_by(col.desc() if order == "desc" else col.asc(), Student.id.asc()).limit(limit).offset(offset)
    return [serialize(s) for s in db.scalars(stmt).all()]


@app.post("/api/students", status_code=201)
def create_student(payload: StudentIn, db: Session = Depends(get_db), user: User = Depends(current_user)):
    data = payload.model_dump()
    validate_student_fields(data["class_level"], data["learning_ability"], data["writing_speed"])
    if user.role == "teacher":
        if data["teacher_id"] not in (None, user.id):
            raise HTTPException(status_code=403, detail="Teachers can only add students to their own class")
        data["teacher_id"] = user.id
    check_teacher_for_class(db, data["teacher_id"], data["class_level"])
    s = Student(**data)
    db.add(s)
    db.commit()
    db.refresh(s)
    write_audit(db, user, "CREATE", "Student", s.id, json.dumps({"name": s.name, "class_level": s.class_level}))
    return serialize(s)


@app.post("/api/students/assign")
def bulk_assign_students(payload: BulkAssignIn, db: Session = Depends(get_db), user: User = Depends(require_admin)):
    store = AssignmentStore(teacher_index(db))
    store.initialize(db.scalars(select(Student).order_by(Student.id.asc())).all())
    rejected = []
    for student_id, teacher_id in sorted(payload.assignments.items()):
        try:
            store.propose(student_id, teacher_id)
        except AssignmentRejected as exc:
            rejected.append({"student_id": exc.student_id, "teacher_id": exc.teacher_id, "reason": exc.reason})
    report = save_assignments(store, Persister(lambda sid, tid: persist_student_teacher(db, sid, tid)))
    store.dispose()
    if report is None:
        return {"status": "noop", "changed": 0, "succeeded": 0, "failed": 0, "results": [], "rejected": rejected}
    body = report.as_dict()
    write_audit(db, user, "ASSIGN_BULK", "Student", "bulk", json.dumps({k: body[k] for k in ("changed", "succeeded", "failed")}))
    status = "saved_with_errors" if report.failed else "saved"
    return {"status": status, **body, "rejected": rejected}


@app.get("/api/students/{student_id}")
def get_student(student_id: int, db: Session = Depends(get_db), user: User = Depends(current_user)):
    return serialize(get_student_for(db, user, student_id))


@app.put("/api/students/{student_id}")
def update_student(student_id: int, payload: StudentIn, db: Session = Depends(get_db), user: User = Depends(current_user)):
    s = get_student_for(db, user, student_id)
    data = payload.model_dump()
    validate_student_fields(data["class_level"], data["learning_ability"], data["writing_speed"])
    if user.role == "teacher" and data["teacher_id"] != s.teacher_id:
        raise HTTPException(status_code=403, detail="Only an admin can reassign students")
    check_teacher_for_class(db, data["teacher_id"], data["class_level"])
    for k, v in data.items():
        setattr(s, k, v)
    db.commit()
    db.refresh(s)
    write_audit(db, user, "UPDATE", "Student", s.id, json.dumps(data))
    return serialize(s)


@app.patch("/api/students/{student_id}")
def patch_student(student_id: int, payload: StudentPatchIn, db: Session = Depends(get_db), user: User = Depends(current_user)):
    s = get_student_for(db, user, student_id)
    changes = payload.model_dump(exclude_unset=True)
    if "teacher_id" in changes and user.role != "admin" and changes["teacher_id"] != s.teacher_id:
        raise HTTPException(status_code=403, detail="Only an admin can reassign students")
    for k in ("name", "age", "class_level", "learning_ability"):
        if k in changes and changes[k] is None:
            raise HTTPException(status_code=400, detail=f"{k} cannot be cleared")
    merged = {**serialize(s), **changes}
    validate_student_fields(merged["class_level"], merged["learning_ability"], merged["writing_speed"])
    check_teacher_for_class(db, merged["teacher_id"], merged["class_level"])
    for k, v in changes.items():
        setattr(s, k, v)
    db.commit()
    db.refresh(s)
    write_audit(db, user, "PATCH", "Student", s.id, json.dumps(changes))
    return serialize(s)


@app.delete("/api/students/{student_id}", status_code=204)
def delete_student(student_id: int, db: Session = Depends(get_db), user: User = Depends(current_user)):
    s = get_student_for(db, user, student_id)
    for entry in db.scalars(select(Progress).where(Progress.student_id == s.id)).all():
        db.delete(entry)
    db.delete(s)
    db.commit()
    write_audit(db, user, "DELETE", "Student", student_id)


@app.post("/api/students/{student_id}/assign")
def assign_student(student_id: int, payload: AssignIn, db: Session = Depends(get_db), user: User = Depends(require_admin)):
    s = db.get(Student, student_id)
    if not s:
        raise HTTPException(status_code=404, detail="Student not found")
    check_teacher_for_class(db, payload.teacher_id, s.class_level)
    s.teacher_id = payload.teacher_id
    db.commit()
    write_audit(db, user, "ASSIGN", "Student", s.id, json.dumps({"teacher_id": payload.teacher_id}))
    return {"status": "assigned", "student_id": s.id, "teacher_id": s.teacher_id}


@app.get("/api/students/{student_id}/eligible-teachers")
def eligible_teachers(student_id: int, db: Session = Depends(get_db), _: User = Depends(require_admin)):
    s = db.get(Student, student_id)
    if not s:
        raise HTTPException(status_code=404, detail="Student not found")
    ids = set(teacher_index(db).eligible_teachers(s.class_level))
    teachers = db.scalars(select(User).where(User.role == "teacher").order_by(User.name.asc())).all()
    return [serialize_user(t) for t in teachers if t.id in ids]


@app.get("/api/progress/{student_id}")
def list_progress(student_id: int, db: Session = Depends(get_db), user: User = Depends(current_user)):
    s = get_student_for(db, user, student_id)
    rows = db.scalars(select(Progress).where(Progress.student_id == s.id).order_by(Progress.entry_date.desc(), Progress.id.desc())).all()
    return [serialize(p) for p in rows]


@app.post("/api/progress", status_code=201)
def create_progress(payload: ProgressIn, db: Session = Depends(get_db), user: User = Depends(current_user)):
    get_student_for(db, user, payload.student_id)
    data = payload.model_dump()
    validate_ratings(data)
    if data["entry_date"] is None:
        data["entry_date"] = date.today()
    p = Progress(**data)
    db.add(p)
    db.commit()
    db.refresh(p)
    write_audit(db, user, "CREATE", "Progress", p.id, json.dumps({"student_id": p.student_id}))
    return serialize(p)


@app.put("/api/progress/{progress_id}")
def update_progress(progress_id: int, payload: ProgressUpdateIn, db: Session = Depends(get_db), user: User = Depends(current_user)):
    p = db.get(Progress, progress_id)
    if not p:
        raise HTTPException(status_code=404, detail="Progress entry not found")
    get_student_for(db, user, p.student_id)
    changes = payload.model_dump(exclude_unset=True)
    validate_ratings(changes)
    for k, v in changes.items():
        if v is None and k != "comments":
            continue
        setattr(p, k, v)
    db.commit()
    db.refresh(p)
    write_audit(db, user, "UPDATE", "Progress", p.id)
    return serialize(p)


@app.delete("/api/progress/{progress_id}", status_code=204)
def delete_progress(progress_id: int, db: Session = Depends(get_db), user: User = Depends(current_user)):
    p = db.get(Progress, progress_id)
    if not p:
        raise HTTPException(status_code=404, detail="Progress entry not found")
    get_student_for(db, user, p.student_id)
    db.delete(p)
    db.commit()
    write_audit(db, user, "DELETE", "Progress", progress_id)


@app.get("/api/teaching-plans")
def list_teaching_plans(
    type: Optional[str] = None,
    class_level: Optional[str] = None,
    created_by: Optional[int] = None,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    stmt = select(TeachingPlan)
    if type:
        stmt = stmt.where(TeachingPlan.type == type)
    if class_level:
        stmt = stmt.where(TeachingPlan.class_level == class_level)
    if user.role == "teacher":
        stmt = stmt.where(TeachingPlan.created_by == user.id)
    elif created_by is not None:
        stmt = stmt.where(TeachingPlan.created_by == created_by)
    return [serialize(p) for p in db.scalars(stmt.order_by(TeachingPlan.start_date.desc(), TeachingPlan.id.desc())).all()]


@app.post("/api/teaching-plans", status_code=201)
def create_teaching_plan(payload: TeachingPlanIn, db: Session = Depends(get_db), user: User = Depends(current_user)):
    require_choice(payload.type, PLAN_TYPES, "type")
    require_choice(payload.class_level, CLASS_LEVELS, "class_level")
    if payload.end_date < payload.start_date:
        raise HTTPException(status_code=400, detail="end_date cannot be before start_date")
    plan = TeachingPlan(**payload.model_dump(), created_by=user.id)
    db.add(plan)
    db.commit()
    db.refresh(plan)
    write_audit(db, user, "CREATE", "TeachingPlan", plan.id, json.dumps({"title": plan.title, "type": plan.type}))
    return serialize(plan)


@app.get("/api/teaching-plans/{plan_id}")
def get_teaching_plan(plan_id: int, db: Session = Depends(get_db), user: User = Depends(current_user)):
    return serialize(get_plan_for(db, user, plan_id))


@app.put("/api/teaching-plans/{plan_id}")
def update_teaching_plan(plan_id: int, payload: TeachingPlanUpdateIn, db: Session = Depends(get_db), user: User = Depends(current_user)):
    plan = get_plan_for(db, user, plan_id)
    changes = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}
    if "type" in changes:
        require_choice(changes["type"], PLAN_TYPES, "type")
    if "class_level" in changes:
        require_choice(changes["class_level"], CLASS_LEVELS, "class_level")
    if changes.get("end_date", plan.end_date) < changes.get("start_date", plan.start_date):
        raise HTTPException(status_code=400, detail="end_date cannot be before start_date")
    for k, v in changes.items():
        setattr(plan, k, v)
    db.commit()
    db.refresh(plan)
    write_audit(db, user, "UPDATE", "TeachingPlan", plan.id)
    return serialize(plan)


@app.delete("/api/teaching-plans/{plan_id}", status_code=204)
def delete_teaching_plan(plan_id: int, db: Session = Depends(get_db), user: User = Depends(current_user)):
    plan = get_plan_for(db, user, plan_id)
    db.delete(plan)
    db.commit()
    write_audit(db, user, "DELETE", "TeachingPlan", plan_id)


@app.get("/api/dashboard/stats")
def dashboard_stats(db: Session = Depends(get_db), user: User = Depends(current_user)):
    student_stmt = select(Student)
    plan_stmt = select(TeachingPlan)
    if user.role == "teacher":
        student_stmt = student_stmt.where(Student.teacher_id == user.id)
        plan_stmt = plan_stmt.where(TeachingPlan.created_by == user.id)
    students = db.scalars(student_stmt).all()
    student_ids = [s.id for s in students]
    progress_count = 0
    if student_ids:
        progress_count = db.scalar(select(func.count(Progress.id)).where(Progress.student_id.in_(student_ids))) or 0
    by_class = Counter(s.class_level for s in students)
    by_ability = Counter(s.learning_ability for s in students)
    out = {
        "total_students": len(students),
        "total_plans": db.scalar(select(func.count()).select_from(plan_stmt.subquery())) or 0,
        "total_progress_entries": progress_count,
        "unassigned_students": sum(1 for s in students if s.teacher_id is None),
        "class_distribution": {c: by_class.get(c, 0) for c in CLASS_LEVELS},
        "learning_ability_distribution": {a: by_ability.get(a, 0) for a in LEARNING_ABILITIES},
    }
    if user.role == "admin":
        out["total_teachers"] = db.scalar(select(func.count(User.id)).where(User.role == "teacher")) or 0
    return out


@app.get("/api/dashboard/activity")
def dashboard_activity(limit: int = Query(10, ge=1, le=100), db: Session = Depends(get_db), _: User = Depends(require_admin)):
    rows = db.scalars(select(AuditLog).order_by(AuditLog.created_at.desc()).limit(limit)).all()
    names = {u.id: u.name for u in db.scalars(select(User).where(User.id.in_(sorted({r.actor_user_id for r in rows})))).all()} if rows else {}
    return [{**serialize(r), "actor_name": names.get(r.actor_user_id)} for r in rows]


@app.get("/api/reports/students")
def student_progress_report(
    class_level: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    stmt = select(Student)
    if class_level:
        stmt = stmt.where(Student.class_level == class_level)
    if user.role == "teacher":
        stmt = stmt.where(Student.teacher_id == user.id)
    students = db.scalars(stmt.order_by(Student.class_level.asc(), Student.name.asc())).all()
    teacher_names = {t.id: t.name for t in db.scalars(select(User).where(User.role == "teacher")).all()}
    rows = []
    for s in students:
        pstmt = select(Progress).where(Progress.student_id == s.id)
        if start_date:
            pstmt = pstmt.where(Progress.entry_date >= start_date)
        if end_date:
            pstmt = pstmt.where(Progress.entry_date <= end_date)
        entries = db.scalars(pstmt.order_by(Progress.entry_date.asc(), Progress.id.asc())).all()
        latest = entries[-1] if entries else None
        rows.append(
            {
                "student": serialize(s),
                "teacher_name": teacher_names.get(s.teacher_id, "Unassigned"),
                "progress_entries": [serialize(p) for p in entries],
                "latest_ratings": {a: getattr(latest, a) for a in PROGRESS_AREAS} if latest else None,
            }
        )
    return {"generated_at": datetime.utcnow(), "count": len(rows), "rows": rows}


@app.get("/api/reports/plans")
def teaching_plan_report(
    type: Optional[str] = None,
    class_level: Optional[str] = None,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    stmt = select(TeachingPlan)
    if type:
        stmt = stmt.where(TeachingPlan.type == type)
    if class_level:
        stmt = stmt.where(TeachingPlan.class_level == class_level)
    if user.role == "teacher":
        stmt = stmt.where(TeachingPlan.created_by == user.id)
    plans = db.scalars(stmt.order_by(TeachingPlan.start_date.asc(), TeachingPlan.id.asc())).all()
    names = {u.id: u.name for u in db.scalars(select(User)).all()}
    rows = [{**serialize(p), "created_by_name": names.get(p.created_by)} for p in plans]
    return {"generated_at": datetime.utcnow(), "count": len(rows), "rows": rows}


@app.post("/api/ai-suggestions")
def ai_suggestions(payload: SuggestionIn, _: User = Depends(current_user)):
    prompt = payload.prompt.strip()
    if not prompt:
        raise HTTPException(status_code=400, detail="Prompt is required")
    return suggestion_service.suggest(prompt)


@app.get("/api/audit")
def audit_feed(limit: int = Query(200, ge=1, le=1000), db: Session = Depends(get_db), _: User = Depends(require_admin)):
    return [serialize(r) for r in db.scalars(select(AuditLog).order_by(AuditLog.created_at.desc()).limit(limit)).all()]
