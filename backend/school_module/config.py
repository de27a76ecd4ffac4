import os
from dataclasses import dataclass, field

from dotenv import load_dotenv


BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
load_dotenv(dotenv_path=os.path.join(BACKEND_DIR, ".env"))


def _parse_buckets(raw: str) -> tuple[int, ...]:
    bounds = tuple(sorted({int(part) for part in raw.split(",") if part.strip()}))
    return bounds or (30, 60, 90)


@dataclass(frozen=True)
class Settings:
    database_url: str = os.getenv(
        "SCHOOL_DATABASE_URL",
        os.getenv("DATABASE_URL", f"sqlite:///{os.path.join(BACKEND_DIR, 'school_core.db')}"),
    )
    jwt_secret: str = os.getenv("SCHOOL_JWT_SECRET", os.getenv("JWT_SECRET", "change-me-in-production"))
    jwt_algorithm: str = os.getenv("SCHOOL_JWT_ALGORITHM", "HS256")
    jwt_exp_minutes: int = int(os.getenv("SCHOOL_JWT_EXP_MINUTES", "60"))
    super_admin_email: str = os.getenv("SUPER_ADMIN_EMAIL", "superadmin@school.local")
    super_admin_password: str = os.getenv("SUPER_ADMIN_PASSWORD", "ChangeMe@123")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    # Upper bounds (inclusive, in days) of the aging buckets; the last bucket is open ended.
    aging_bucket_bounds: tuple[int, ...] = field(
        default_factory=lambda: _parse_buckets(os.getenv("FEE_AGING_BUCKETS", "30,60,90"))
    )


settings = Settings()
