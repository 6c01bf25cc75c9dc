# tests/conftest.py - Shared fixtures

import json

import pytest

from chaincrf.models import create_config
from chaincrf.segmenter import CRFSegmenter


@pytest.fixture
def samples():
    """Ten samples where every segment starts at an 'a'"""
    data = []
    for k in range(1, 6):
        data.append({"text": "ab" * k, "segments": ["ab"] * k})
        data.append({"text": "abb" * k, "segments": ["abb"] * k})
    return data


@pytest.fixture
def fast_config():
    return create_config(learning_rate=0.5, max_iterations=30)


@pytest.fixture
def segmenter(samples, fast_config):
    model = CRFSegmenter(fast_config, window_size=1)
    model.train(samples)
    return model


@pytest.fixture
def sample_file(tmp_path, samples):
    path = tmp_path / "samples.json"
    path.write_text(json.dumps(samples), encoding="utf-8")
    return str(path)
