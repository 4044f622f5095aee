"""
Shared fixtures for the querytrail test suite.
"""

import sys
import warnings
from pathlib import Path

import pytest

# Filter deprecation warnings from pytest-asyncio; we cannot fix the library.
warnings.filterwarnings(
    "ignore",
    category=DeprecationWarning,
    module="pytest_asyncio",
)

# Ensure the src/ directory is on the import path so that
# querytrail.core.* can be imported without installing the package.
SRC_ROOT = Path(__file__).resolve().parent.parent / "src"
sys.path.insert(0, str(SRC_ROOT))

from querytrail.core.config import QuerytrailConfig  # noqa: E402


# =============================================================================
# Fixtures — sample sources
# =============================================================================

USER_MAPPER_KT = """\
package com.example.user.repository

interface UserMapper {
    fun findById(id: Long): User?
    fun updateName(id: Long, name: String): Int
}
"""

USER_SERVICE_KT = """\
package com.example.user.service

class UserService(private val userMapper: UserMapper) {
    fun getUser(id: Long): User? {
        return userMapper.findById(id)
    }

    fun rename(id: Long, name: String) {
        userMapper.updateName(id, name)
        getUser(id)
    }
}
"""

USER_CONTROLLER_KT = """\
package com.example.user.controller

class UserController(private val userService: UserService) {
    fun show(id: Long) = userService.getUser(id)

    fun update(id: Long, name: String) {
        // rename("ignored") in a comment is not a call
        userService.rename(id, name)
    }
}
"""

USER_MAPPER_XML = """\
<?xml version="1.0" encoding="UTF-8"?>
<mapper namespace="com.example.user.repository">
    <select id="findById">SELECT * FROM users WHERE id = #{id}</select>
    <update id="updateName">UPDATE users SET name = #{name} WHERE id = #{id}</update>
    <delete id="purge">DELETE FROM users</delete>
</mapper>
"""


@pytest.fixture
def python_source() -> str:
    """Python module with two functions, one calling the other, and a top-level call."""
    return (
        "import os\n"
        "\n"
        "def fetch_user(user_id: int) -> dict:\n"
        "    \"\"\"Retrieve a user from the database.\"\"\"\n"
        "    return load(user_id)\n"
        "\n"
        "\n"
        "async def send_email(to: str) -> bool:\n"
        "    client.send(to)\n"
        "    return fetch_user(1) is not None\n"
        "\n"
        "fetch_user(0)\n"
    )


@pytest.fixture
def kotlin_source() -> str:
    return USER_SERVICE_KT


@pytest.fixture
def config() -> QuerytrailConfig:
    """Default configuration, independent of the environment."""
    return QuerytrailConfig()


@pytest.fixture
def sample_project(tmp_path: Path) -> Path:
    """
    A three-layer Kotlin project (repository, service, controller) with
    one MyBatis mapper XML.
    """
    kotlin = tmp_path / "src" / "main" / "kotlin" / "com" / "example" / "user"
    for layer, name, text in (
        ("repository", "UserMapper.kt", USER_MAPPER_KT),
        ("service", "UserService.kt", USER_SERVICE_KT),
        ("controller", "UserController.kt", USER_CONTROLLER_KT),
    ):
        (kotlin / layer).mkdir(parents=True)
        (kotlin / layer / name).write_text(text, encoding="utf-8")

    resources = tmp_path / "src" / "main" / "resources" / "mapper"
    resources.mkdir(parents=True)
    (resources / "UserMapper.xml").write_text(USER_MAPPER_XML, encoding="utf-8")

    # Not a mapper; must be ignored
    (tmp_path / "src" / "main" / "resources" / "logback.xml").write_text(
        "<configuration><root level=\"INFO\"/></configuration>\n", encoding="utf-8",
    )

    # Excluded directory (should be ignored)
    excluded = tmp_path / "build"
    excluded.mkdir()
    (excluded / "Generated.kt").write_text("fun findById() = 1\n", encoding="utf-8")

    return tmp_path


@pytest.fixture
def kotlin_path():
    """Normalized absolute path of one sample source file, as the index stores it."""
    def _path(project: Path, layer: str, name: str) -> str:
        path = project.resolve() / "src" / "main" / "kotlin" / "com" / "example" / "user" / layer / name
        return str(path).replace("\\", "/")
    return _path
