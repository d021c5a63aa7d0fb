"""Tests for the ab-partitioner command line entry point."""

from unittest.mock import patch

import pytest

from ab_partitioner import main as cli
from ab_partitioner.config import settings
from ab_partitioner.domain.models import LayoutVariant
from ab_partitioner.storage.exceptions import (
    InputImageNotFoundError,
    PartitionOperationError,
    PrivilegeError,
)


@pytest.fixture(autouse=True)
def quiet_logging():
    with patch("ab_partitioner.main.setup_logging") as mock_setup:
        yield mock_setup


@pytest.fixture
def images(tmp_path):
    source = tmp_path / "in.img"
    source.write_bytes(b"\0" * 1024)
    return source, tmp_path / "out.img"


class TestArguments:
    """Tests for argument parsing."""

    def test_wrong_arity_exits_with_usage_error(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            cli.main(["only-one.img"])
        assert excinfo.value.code == 2
        assert "usage:" in capsys.readouterr().err

    def test_unknown_variant_rejected(self, images):
        source, output = images
        with pytest.raises(SystemExit):
            cli.main([str(source), str(output), "--variant", "gpt"])

    def test_logging_flags_forwarded(self, images, quiet_logging, tmp_path):
        source, output = images
        with patch("ab_partitioner.main.validate_conversion_request"), patch(
            "ab_partitioner.main.convert_image"
        ):
            cli.main([str(source), str(output), "--debug", "--log-dir", str(tmp_path)])
        quiet_logging.assert_called_once_with(debug=True, trace=False, log_dir=tmp_path)


class TestPreflight:
    """Tests for failures detected before any device is touched."""

    def test_missing_tool_stops_before_conversion(self, images):
        source, output = images

        def which(tool):
            return None if tool == "parted" else f"/usr/bin/{tool}"

        with patch("ab_partitioner.storage.validation.shutil.which", side_effect=which), patch(
            "ab_partitioner.main.convert_image"
        ) as mock_convert, patch("subprocess.run") as mock_run:
            assert cli.main([str(source), str(output)]) != 0

        mock_convert.assert_not_called()
        mock_run.assert_not_called()
        assert not output.exists()

    def test_missing_input_prints_usage(self, tmp_path, capsys):
        missing = tmp_path / "missing.img"
        with patch(
            "ab_partitioner.main.validate_conversion_request",
            side_effect=InputImageNotFoundError(str(missing)),
        ), patch("ab_partitioner.main.convert_image") as mock_convert:
            assert cli.main([str(missing), str(tmp_path / "out.img")]) == 1

        assert "usage:" in capsys.readouterr().err
        mock_convert.assert_not_called()

    def test_bad_variant_in_settings_returns_one(self, images):
        source, output = images
        settings.set_setting("variant", "gpt")

        with patch("ab_partitioner.main.convert_image") as mock_convert:
            assert cli.main([str(source), str(output)]) == 1

        mock_convert.assert_not_called()

    def test_not_root(self, images):
        source, output = images
        with patch(
            "ab_partitioner.main.validate_conversion_request", side_effect=PrivilegeError()
        ), patch("ab_partitioner.main.convert_image") as mock_convert:
            assert cli.main([str(source), str(output)]) == 1
        mock_convert.assert_not_called()


class TestConversion:
    """Tests for the conversion outcome."""

    def test_success_returns_zero(self, images):
        source, output = images
        with patch("ab_partitioner.main.validate_conversion_request") as mock_validate, patch(
            "ab_partitioner.main.convert_image"
        ) as mock_convert:
            assert cli.main([str(source), str(output), "--variant", "standard"]) == 0

        options = mock_convert.call_args[0][0]
        assert options.input_image == source
        assert options.output_image == output
        assert options.profile.variant is LayoutVariant.STANDARD
        assert options.write_digest is True
        assert mock_validate.call_args.kwargs["tools"] == options.required_tools

    def test_no_digest_flag(self, images):
        source, output = images
        with patch("ab_partitioner.main.validate_conversion_request"), patch(
            "ab_partitioner.main.convert_image"
        ) as mock_convert:
            cli.main([str(source), str(output), "--variant", "standard", "--no-digest"])

        assert mock_convert.call_args[0][0].write_digest is False

    def test_stage_failure_returns_one(self, images):
        source, output = images
        with patch("ab_partitioner.main.validate_conversion_request"), patch(
            "ab_partitioner.main.convert_image",
            side_effect=PartitionOperationError("parted failed"),
        ):
            assert cli.main([str(source), str(output)]) == 1

    def test_unexpected_error_returns_one(self, images):
        source, output = images
        with patch("ab_partitioner.main.validate_conversion_request"), patch(
            "ab_partitioner.main.convert_image", side_effect=RuntimeError("boom")
        ):
            assert cli.main([str(source), str(output)]) == 1
