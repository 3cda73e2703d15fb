import json

import pytest

from pageflow.main import EXIT_INVALID_PLAN, main


def test_invalid_plan_message_is_printed_verbatim(capsys) -> None:
    plan = {"actions": [{"type": "print", "elements": ["h1"], "format": "[b]"}]}

    with pytest.raises(SystemExit) as info:
        main(["--url", "https://shop.test/", "--plan", json.dumps(plan), "--no-cache"])

    assert info.value.code == EXIT_INVALID_PLAN
    assert "unsupported format: [b]" in capsys.readouterr().out
