import pytest

from yogi.catalog.poses import PoseCatalog, UnknownPoseError


def test_shipped_catalog(catalog):
    assert catalog.labels() == ["downdog", "goddess", "plank", "tree", "warrior2"]
    tree = catalog.lookup("tree")
    assert tree.name == "Tree"
    assert tree.instructions
    assert "tree" in catalog
    assert len(catalog) == 5


def test_difficulty_filter(catalog):
    assert [pose.label for pose in catalog.poses("intermediate")] == ["goddess"]
    assert catalog.poses("advanced") == []


def test_unknown_pose(catalog):
    with pytest.raises(UnknownPoseError) as excinfo:
        catalog.lookup("lotus")
    assert excinfo.value.code == "unknown_pose"


def test_catalog_validation():
    with pytest.raises(ValueError, match="Duplicate"):
        PoseCatalog.from_dict({"poses": [{"label": "tree"}, {"label": "tree"}]})
    with pytest.raises(ValueError, match="difficulty"):
        PoseCatalog.from_dict({"poses": [{"label": "tree", "difficulty": "legendary"}]})


def test_from_dict_defaults():
    catalog = PoseCatalog.from_dict({"poses": [{"label": "plank", "instructions": ["Hold"]}]})
    pose = catalog.lookup("plank")
    assert pose.name == "Plank"
    assert pose.difficulty == "beginner"
    assert pose.instructions == ("Hold",)
    assert pose.media_url is None
