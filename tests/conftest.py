import pytest

from district_assistant.types import ConversationContext, DistrictProfile, UserContext, UserRole


@pytest.fixture()
def district() -> DistrictProfile:
    return DistrictProfile(
        name="Maple Valley School District",
        helpline_info="Call the district helpline at 555-0100.",
        main_office_contact="the district office at 555-0199",
    )


@pytest.fixture()
def parent() -> UserContext:
    return UserContext(
        user_id="parent-1",
        tenant_id="district-1",
        role=UserRole.PARENT,
        display_name="Jordan Lee",
        child_ids=["stu-1"],
        school_ids=["school-1"],
    )


@pytest.fixture()
def guest() -> UserContext:
    return UserContext(user_id="guest-1", tenant_id="district-1", role=UserRole.GUEST)


@pytest.fixture()
def conversation(parent: UserContext, district: DistrictProfile) -> ConversationContext:
    return ConversationContext(user=parent, district=district, conversation_id="conv-1")
