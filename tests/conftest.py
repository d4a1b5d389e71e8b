import json

import numpy as np
import pandas as pd
import pytest

from psych_interpreter.chat import ChatBackend, ChatSession, TokenUsage
from psych_interpreter.extraction import extract


class ScriptedBackend(ChatBackend):
    """Chat backend replaying canned replies and token totals."""

    def __init__(self, replies, totals=None, error=None):
        self.replies = list(replies)
        self.totals = list(totals or [])
        self.error = error
        self.prompts = []
        self._current = TokenUsage(0, 0)

    def _complete(self, system_prompt, user_prompt):
        self.prompts.append((system_prompt, user_prompt))
        if self.error is not None:
            raise self.error
        if self.totals:
            self._current = TokenUsage(*self.totals.pop(0))
        return self.replies.pop(0)

    def token_totals(self):
        return self._current


def fa_reply(entries):
    """Builds a JSON reply from {component_id: (name, interpretation)}."""
    return json.dumps(
        {cid: {"name": name, "interpretation": text} for cid, (name, text) in entries.items()}
    )


@pytest.fixture
def variable_info():
    return pd.DataFrame(
        {
            "variable": ["v1", "v2", "v3"],
            "description": ["Enjoys parties", "Talks to strangers", "Worries often"],
        }
    )


@pytest.fixture
def fa_loadings():
    return pd.DataFrame(
        {"MR1": [0.8, 0.7, 0.1], "MR2": [0.1, 0.2, 0.9]}, index=["v1", "v2", "v3"]
    )


@pytest.fixture
def fa_data(fa_loadings, variable_info):
    return extract(fa_loadings, variable_info, analysis_type="fa")


@pytest.fixture
def gm_record():
    memberships = np.array(
        [[0.95, 0.05], [0.9, 0.1], [0.85, 0.15], [0.1, 0.9], [0.05, 0.95], [0.2, 0.8]]
    )
    return {
        "means": pd.DataFrame(
            {"c1": [1.5, 1.2, -0.5], "c2": [-1.0, -0.8, 2.5]}, index=["v1", "v2", "v3"]
        ),
        "covariances": np.stack([np.eye(3), np.eye(3)]),
        "proportions": [0.5, 0.5],
        "memberships": memberships,
        "covariance_type": "full",
        "bic": 1234.567,
    }


@pytest.fixture
def gm_data(gm_record, variable_info):
    return extract(gm_record, variable_info, analysis_type="gm")


@pytest.fixture
def scripted_session():
    def _open(analysis_type, replies, totals=None, **kwargs):
        backend = ScriptedBackend(replies, totals, **kwargs)
        return ChatSession.open(analysis_type, backend=backend)

    return _open


@pytest.fixture
def scripted_backend():
    return ScriptedBackend


@pytest.fixture
def json_reply():
    return fa_reply
