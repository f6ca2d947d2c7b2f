import allure
from click.testing import CliRunner

from taskweave import __version__
from taskweave.main import taskweave

pytestmark = [
    allure.epic("Execution Engine"),
    allure.feature("CLI"),
]


def test_version():
    assert __version__


def test_version_option():
    runner = CliRunner()
    result = runner.invoke(taskweave, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output
