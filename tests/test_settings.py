import pytest

from ranking_layers.errors import ConfigurationError
from ranking_layers.settings import Setting, enumerate_settings, find_baseline


def test_enumerate_all_non_empty_subsets():
    settings = enumerate_settings(["textual", "uri", "type"])

    assert len(settings) == 7
    assert [s.index for s in settings] == list(range(1, 8))
    assert len({s.layer_set for s in settings}) == 7
    assert settings[0] == Setting(1, ("textual",))
    assert settings[2].label == "textual,uri"
    assert settings[-1].layers == ("textual", "uri", "type")


@pytest.mark.parametrize("layers", [[], ["textual", "textual"]])
def test_enumerate_rejects_invalid_layers(layers):
    with pytest.raises(ConfigurationError):
        enumerate_settings(layers)


def test_find_baseline_matches_exact_layer_set():
    settings = enumerate_settings(["textual", "uri", "type"])

    assert settings[find_baseline(settings, ["textual"])].label == "textual"
    assert settings[find_baseline(settings, ["type", "textual"])].label == "textual,type"

    with pytest.raises(ConfigurationError):
        find_baseline(settings, ["frame"])
