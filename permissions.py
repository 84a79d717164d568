"""
Authorization policy.

Every endpoint that mutates or reads protected data calls one of these
helpers before touching storage. Each helper raises HTTPException(403)
when the caller is not allowed; admins pass every classroom check.
"""

from typing import Any, Dict, List

from fastapi import HTTPException, status


def _deny(detail: str):
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def is_admin(user: Dict[str, Any]) -> bool:
    return user.get("role") == "admin"


def require_role(user: Dict[str, Any], *roles: str) -> None:
    if user.get("role") not in roles:
        _deny("Forbidden for role")


def is_classroom_faculty(user: Dict[str, Any], classroom: Dict[str, Any]) -> bool:
    """Owner or invited faculty"""
    uid = user.get("id")
    return classroom.get("ownerFacultyId") == uid or uid in (classroom.get("invitedFacultyIds") or [])


def is_enrolled(user: Dict[str, Any], classroom: Dict[str, Any]) -> bool:
    uid = user.get("id")
    return any(s.get("userId") == uid for s in classroom.get("students") or [])


def ensure_classroom_access(user: Dict[str, Any], classroom: Dict[str, Any]) -> None:
    if is_admin(user):
        return
    if user.get("role") != "faculty" or not is_classroom_faculty(user, classroom):
        _deny("Permission denied to modify this classroom.")


def ensure_classroom_owner(
    user: Dict[str, Any],
    classroom: Dict[str, Any],
    detail: str = "Permission denied: Only the classroom owner can delete the classroom.",
) -> None:
    if is_admin(user):
        return
    if classroom.get("ownerFacultyId") != user.get("id"):
        _deny(detail)


def ensure_enrolled(user: Dict[str, Any], classroom: Dict[str, Any]) -> None:
    if not is_enrolled(user, classroom):
        _deny("Access denied: You are not enrolled in this classroom.")


def ensure_chat_member(user: Dict[str, Any], classroom: Dict[str, Any]) -> None:
    if is_admin(user) or is_classroom_faculty(user, classroom) or is_enrolled(user, classroom):
        return
    _deny("Access denied: You are not a member of this classroom.")


def ensure_student_access(user: Dict[str, Any], student_classrooms: List[Dict[str, Any]]) -> None:
    """Faculty may see a student's records only through a classroom they teach"""
    if is_admin(user):
        return
    if user.get("role") != "faculty" or not any(is_classroom_faculty(user, c) for c in student_classrooms):
        _deny("Permission denied: this student is not enrolled in any of your classrooms.")
