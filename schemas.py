"""
Database Schemas

CourseHub collections using Pydantic models.
Each model name maps to a MongoDB collection with the lowercase class name.

Example:
- User -> "user"
- Course -> "course"
- Enrollment -> "enrollment"
- Review -> "review"
"""

from pydantic import BaseModel, Field, EmailStr
from typing import Optional
from datetime import datetime

ROLES = ("student", "instructor", "admin")
GUEST = "guest"
DEFAULT_ROLE = "student"

COURSE_STATUSES = ("pending", "approved", "rejected")


class User(BaseModel):
    """Users collection schema"""
    email: EmailStr = Field(..., description="Email address, unique")
    name: Optional[str] = Field(None, description="Display name")
    photo_url: Optional[str] = Field(None, description="Avatar URL")
    phone: str = Field("", description="Phone number")
    address: str = Field("", description="Postal address")
    role: str = Field(DEFAULT_ROLE, description="Role: student | instructor | admin")


class Course(BaseModel):
    """Courses collection schema"""
    course_title: str = Field(..., description="Course title")
    image: str = Field(..., description="Cover image URL")
    description: str = Field(..., description="Course description")
    duration: str = Field(..., description="Human readable duration, e.g. 6 weeks")
    instructor_email: EmailStr = Field(..., description="Owning instructor")
    seats: int = Field(..., ge=0, description="Seats still available")
    price: float = Field(..., ge=0, description="Price in USD")
    enrollment_count: int = Field(0, ge=0, description="Seats consumed by live enrollments")
    # Legacy documents have no status at all and count as approved.
    status: Optional[str] = Field("pending", description="pending | approved | rejected")


class Enrollment(BaseModel):
    """Enrollments collection schema"""
    user_email: EmailStr = Field(..., description="Enrolled user")
    course_id: str = Field(..., description="Course ObjectId as string")
    course_title: str = Field(..., description="Course title at enrollment time")
    enrolled_at: Optional[datetime] = Field(default=None, description="Enrollment time")


class Review(BaseModel):
    """Reviews collection schema"""
    course_id: str = Field(..., description="Course ObjectId as string")
    user_email: EmailStr = Field(..., description="Reviewer")
    user_name: str = Field(..., description="Reviewer display name")
    user_photo: Optional[str] = Field(None, description="Reviewer avatar URL")
    rating: int = Field(..., ge=1, le=5, description="1 to 5 stars")
    comment: str = Field(..., min_length=1, description="Review text")
