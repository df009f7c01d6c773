import re

import pytest

from cirrus.naming import GroupNamingConvention, NamingConvention


class TestGroupNamingConvention:
    def test_shared_name(self):
        assert GroupNamingConvention().shared_name_for_group("web") == "cirrus-web"

    def test_unique_names_differ(self):
        naming = GroupNamingConvention()
        a = naming.unique_name_for_group("web")
        b = naming.unique_name_for_group("web")
        assert a != b
        assert re.fullmatch(r"cirrus-web-[0-9a-f]{8}", a)

    def test_group_of_round_trips(self):
        naming = GroupNamingConvention()
        assert naming.group_of(naming.shared_name_for_group("web")) == "web"
        assert naming.group_of(naming.unique_name_for_group("web")) == "web"

    def test_group_with_delimiter(self):
        naming = GroupNamingConvention()
        assert naming.group_of("cirrus-my-app") == "my-app"
        assert naming.group_of("cirrus-my-app-deadbeef") == "my-app"

    def test_foreign_names(self):
        naming = GroupNamingConvention()
        assert naming.group_of("default") is None
        assert naming.group_of("other-web") is None
        assert naming.group_of("cirrus-") is None

    def test_custom_prefix_and_delimiter(self):
        naming = GroupNamingConvention(prefix="team.a", delimiter="_")
        assert naming.shared_name_for_group("db") == "team.a_db"
        assert naming.group_of("team.a_db") == "db"
        assert naming.group_of("teamXa_db") is None

    @pytest.mark.parametrize("group", ["", "has space"])
    def test_invalid_group(self, group):
        with pytest.raises(ValueError):
            GroupNamingConvention().shared_name_for_group(group)

    def test_invalid_delimiter(self):
        with pytest.raises(ValueError):
            GroupNamingConvention(delimiter="--")

    def test_satisfies_protocol(self):
        assert isinstance(GroupNamingConvention(), NamingConvention)
