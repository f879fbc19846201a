"""
Integration tests for the full create-verify-decode cycle

These run the real renderer (reportlab), rasterizer (pdf2image/poppler) and
reader (pyzbar/zbar). Only duply and the shell snapshot are faked.
"""

import os
import shutil
import sys
import tempfile
from pathlib import Path

import pytest
from click.testing import CliRunner

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import duply_qr as dqr
from tests.profile_helpers import (
    FakeExporter,
    armored_key,
    fake_snapshot,
    make_profile,
    drop_pdf_page,
    reverse_pdf_pages,
)

try:
    from pyzbar import pyzbar  # noqa: F401
    HAVE_ZBAR = True
except ImportError:
    HAVE_ZBAR = False

pytestmark = [
    pytest.mark.skipif(not HAVE_ZBAR, reason="zbar library not available"),
    pytest.mark.skipif(shutil.which('pdftoppm') is None, reason="poppler not available"),
]

DPI = 200


def _render(tmpdir: Path, data: bytes, columns: int, version: int = 10) -> tuple:
    """Encode, lay out and render ``data``; returns (pdf path, sequence, layout)."""
    codec = dqr.QRSymbolCodec()
    archive = dqr.Archive(content=data, checksum=dqr.calculate_checksum(data),
                          compressed=False, bundle=dqr.ProfileBundle('work'))
    sequence = dqr.encode_archive(archive, version, codec)
    layout = dqr.layout_symbols(sequence, columns, title=dqr.document_title('work', 'testhost'),
                                recipe=dqr.decode_recipe(False, 'work'))
    images = [codec.render(symbol) for symbol in sequence.symbols]
    pdf_path = dqr.PdfRenderer().render(layout, images, tmpdir / 'work-duply-profile.pdf')
    return pdf_path, sequence, layout


def _verify(tmpdir: Path, pdf_path: Path, data: bytes) -> dqr.VerificationResult:
    with dqr.Workspace(tmpdir) as workspace:
        return dqr.verify_round_trip(pdf_path, dqr.calculate_checksum(data),
                                     dqr.PdfRasterizer(DPI), dqr.QRSymbolCodec(), workspace)


class TestRoundTrip:
    """Rendered documents read back to the same bytes"""

    @pytest.mark.parametrize('columns', [1, 2, 3])
    def test_multi_symbol_round_trip(self, columns):
        data = os.urandom(600)

        with tempfile.TemporaryDirectory() as tmpdir:
            pdf_path, sequence, layout = _render(Path(tmpdir), data, columns)
            result = _verify(Path(tmpdir), pdf_path, data)

            assert len(sequence) == 7
            assert result.passed
            assert result.detail is None
            assert dqr.pdf_page_count(pdf_path) == layout.page_count

    def test_single_symbol_round_trip(self):
        data = b"GPG_KEY='ABCD1234'\n"

        with tempfile.TemporaryDirectory() as tmpdir:
            pdf_path, sequence, _ = _render(Path(tmpdir), data, 2, version=5)

            assert len(sequence) == 1
            assert _verify(Path(tmpdir), pdf_path, data).passed

    def test_pdf_is_private(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            pdf_path, _, _ = _render(Path(tmpdir), os.urandom(100), 2)
            assert oct(pdf_path.stat().st_mode & 0o777) == oct(0o600)

    def test_reversed_pages_pass_verification(self):
        """Pages stacked in the wrong order are put right by the structured append framing"""
        data = os.urandom(500)

        with tempfile.TemporaryDirectory() as tmpdir:
            pdf_path, _, layout = _render(Path(tmpdir), data, 1)
            reversed_pdf = Path(tmpdir) / 'reversed.pdf'
            reverse_pdf_pages(str(pdf_path), str(reversed_pdf))

            result = _verify(Path(tmpdir), reversed_pdf, data)

            assert layout.page_count > 1
            assert result.passed

    def test_missing_page_fails_verification(self):
        data = os.urandom(500)

        with tempfile.TemporaryDirectory() as tmpdir:
            pdf_path, _, layout = _render(Path(tmpdir), data, 1)
            short_pdf = Path(tmpdir) / 'short.pdf'
            drop_pdf_page(str(pdf_path), str(short_pdf), layout.page_count - 1)

            result = _verify(Path(tmpdir), short_pdf, data)

            assert not result.passed
            assert result.actual_checksum == 'unreadable'

    def test_decode_command_rejects_missing_page(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            pdf_path, _, _ = _render(Path(tmpdir), os.urandom(500), 1)
            short_pdf = Path(tmpdir) / 'short.pdf'
            drop_pdf_page(str(pdf_path), str(short_pdf), 0)
            recovered = Path(tmpdir) / 'work.tar.xz'

            cli_result = CliRunner().invoke(dqr.cli, [
                'decode', str(short_pdf), '-o', str(recovered), '--dpi', str(DPI),
            ])

            assert cli_result.exit_code == 1
            assert 'missing' in cli_result.output
            assert not recovered.exists()


class TestBackupAndRestore:
    """A real profile goes to paper and comes back"""

    def _backup(self, tmpdir: Path) -> dqr.BackupResult:
        duply_home = tmpdir / '.duply'
        make_profile(duply_home, 'work', extra_files={'duply_status.json': b'{"last": "full"}'})
        output_dir = tmpdir / 'out'
        output_dir.mkdir()

        options = dqr.BackupOptions(profile='work', duply_home=duply_home, output_dir=output_dir, dpi=DPI)
        exporter = FakeExporter(duply_home, {'gpgkey.ABCD1234.sec.asc': armored_key(2048)})
        return dqr.run_backup(options, exporter=exporter, snapshot=fake_snapshot)

    def test_backup_is_verified(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            result = self._backup(Path(tmpdir))

            assert result.verification.passed
            assert result.output_path.exists()
            assert sorted(os.listdir(Path(tmpdir) / 'out')) == ['work-duply-profile.pdf']
            assert 'conf_mini' not in os.listdir(Path(tmpdir) / '.duply' / 'work')

    def test_decode_command_restores_archive(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            result = self._backup(Path(tmpdir))
            recovered = Path(tmpdir) / 'work.tar.xz'
            restore_dir = Path(tmpdir) / 'restore'

            cli_result = CliRunner().invoke(dqr.cli, [
                'decode', str(result.output_path), '-o', str(recovered),
                '--extract', str(restore_dir), '--dpi', str(DPI),
            ])

            assert cli_result.exit_code == 0, cli_result.output
            assert recovered.read_bytes() == result.archive.content
            conf_mini = restore_dir / '.duply' / 'work' / 'conf_mini'
            assert "GPG_KEY=ABCD1234" in conf_mini.read_text()
            assert 'Rename conf_mini to conf' in cli_result.output

    def test_decode_refuses_to_overwrite(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            result = self._backup(Path(tmpdir))
            existing = Path(tmpdir) / 'work.tar.xz'
            existing.write_bytes(b"keep me")

            cli_result = CliRunner().invoke(dqr.cli, [
                'decode', str(result.output_path), '-o', str(existing),
            ])

            assert cli_result.exit_code == 1
            assert '--force' in cli_result.output
            assert existing.read_bytes() == b"keep me"

    def test_info_command(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            result = self._backup(Path(tmpdir))

            cli_result = CliRunner().invoke(dqr.cli, ['info', str(result.output_path), '--dpi', str(DPI)])

            assert cli_result.exit_code == 0, cli_result.output
            assert 'DUPLY QR BACKUP' in cli_result.output
            assert f"Transport Size:      {len(result.sequence.text):,} characters" in cli_result.output
            assert 'Compression:         xz' in cli_result.output
            assert '.duply/work/gpgkey.ABCD1234.sec.asc' in cli_result.output

    def test_decode_from_page_images(self):
        """Scanned pages given as separate PNG files are stacked in argument order"""
        with tempfile.TemporaryDirectory() as tmpdir:
            result = self._backup(Path(tmpdir))
            pages = dqr.PdfRasterizer(DPI).rasterize(result.output_path)
            scans = []
            for index, page in enumerate(pages):
                scan = Path(tmpdir) / f"scanned_page{index}.png"
                page.save(str(scan))
                scans.append(str(scan))
            recovered = Path(tmpdir) / 'work.tar.xz'

            cli_result = CliRunner().invoke(dqr.cli, ['decode', *scans, '-o', str(recovered)])

            assert cli_result.exit_code == 0, cli_result.output
            assert recovered.read_bytes() == result.archive.content
