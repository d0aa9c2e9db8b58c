import logging
import pathlib

import pytest

from pewalk import PEFile
from pe_test_utils import BuiltImage, build_sample_image, open_pe


@pytest.fixture
def log_all(caplog: pytest.LogCaptureFixture) -> pytest.LogCaptureFixture:
    """caplog capturing every pewalk diagnostic, down to DEBUG."""
    caplog.set_level(logging.DEBUG, logger="pewalk")
    return caplog


@pytest.fixture(scope="session")
def sample32() -> BuiltImage:
    """PE32 executable with imports, exports, TLS and a Rich header."""
    return build_sample_image(is_64bit=False)


@pytest.fixture(scope="session")
def sample64() -> BuiltImage:
    """PE32+ executable with imports, exports, TLS and a Rich header."""
    return build_sample_image(is_64bit=True)


@pytest.fixture
def pe32(sample32: BuiltImage) -> PEFile:
    return open_pe(sample32)


@pytest.fixture
def pe64(sample64: BuiltImage) -> PEFile:
    return open_pe(sample64)


@pytest.fixture
def sample_path(sample32: BuiltImage, tmp_path: pathlib.Path) -> pathlib.Path:
    """The PE32 sample written to disk."""
    path = tmp_path / "sample.exe"
    path.write_bytes(sample32.data)
    return path
