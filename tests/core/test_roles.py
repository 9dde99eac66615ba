from hems.core.models import UserRole
from hems.core.roles import has_role, is_coordinator, is_student, normalize_role, parse_user_role, role_str


def test_normalize_role_accepts_enum_value_object():
    assert normalize_role(UserRole.COORDINATOR) == "coordinator"
    assert parse_user_role(UserRole.COORDINATOR) == UserRole.COORDINATOR


def test_normalize_role_accepts_string_variants():
    assert normalize_role("student") == "student"
    assert normalize_role(" STUDENT ") == "student"
    assert normalize_role({"value": "coordinator"}) == "coordinator"
    assert parse_user_role("coordinator") == UserRole.COORDINATOR


def test_normalize_role_accepts_enumish_strings():
    assert normalize_role("UserRole.COORDINATOR") == "coordinator"
    assert parse_user_role("UserRole.STUDENT") == UserRole.STUDENT


def test_unknown_roles():
    assert normalize_role(None) == ""
    assert parse_user_role("admin") is None
    assert not has_role(None, UserRole.STUDENT)


def test_role_checks_on_users(factory):
    coordinator = factory.coordinator()
    student_user = factory.db_service.get_user_by_id(factory.student().user_id)

    assert role_str(coordinator) == "coordinator"
    assert is_coordinator(coordinator)
    assert is_student(student_user)
    assert not is_student(coordinator)
    assert has_role(student_user, "student", UserRole.COORDINATOR)
