import os
import os.path
import stat
import tempfile
import unittest
from unittest.mock import Mock, patch

from lustctl.plumbing.common import (Ownership, PathConflict, PermissionDenied, SourceNotFound,
                                     State)
from lustctl.plumbing import fs


def mode_of(path: str) -> int:
    return stat.S_IMODE(os.lstat(path).st_mode)


class FilesystemTestCase(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.owner = Ownership(os.getuid(), os.getgid())

    def setUp(self):
        self.tempdir = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tempdir.name, "test")

    def tearDown(self):
        self.tempdir.cleanup()

    def read(self) -> bytes:
        with open(self.path, "rb") as f:
            return f.read()


class TestDirectory(FilesystemTestCase):

    def test_mkdir(self):
        result = fs.ensure_directory(self.path, self.owner)
        self.assertEqual(result.state, State.created)
        self.assertTrue(os.path.isdir(self.path))

    def test_mkdir_exact_mode(self):
        fs.ensure_directory(self.path, self.owner, 0o750)
        self.assertEqual(mode_of(self.path), 0o750)

    def test_mkdir_parents(self):
        path = os.path.join(self.path, "nested")
        fs.ensure_directory(path, self.owner)
        self.assertTrue(os.path.isdir(path))

    def test_mkdir_user(self):
        if os.getuid() != 0:
            self.skipTest("Requires chown, must run as root")
        import pwd
        nobody = pwd.getpwnam("nobody")
        fs.ensure_directory(self.path, Ownership(nobody.pw_uid, nobody.pw_gid))
        self.assertEqual(os.stat(self.path).st_uid, nobody.pw_uid)

    def test_mkdir_change_perms(self):
        fs.ensure_directory(self.path, self.owner, 0o700)
        result = fs.ensure_directory(self.path, self.owner, 0o755)
        self.assertEqual(result.state, State.success)
        self.assertEqual(mode_of(self.path), 0o755)

    def test_mkdir_unchanged(self):
        fs.ensure_directory(self.path, self.owner)
        result = fs.ensure_directory(self.path, self.owner)
        self.assertEqual(result.state, State.unchanged)

    def test_mkdir_conflict(self):
        with open(self.path, "w"):
            pass
        with self.assertRaises(PathConflict):
            fs.ensure_directory(self.path, self.owner)

    @patch("os.mkdir", Mock(side_effect=PermissionError(13, "Permission denied")))
    def test_mkdir_denied(self):
        with self.assertRaises(PermissionDenied):
            fs.ensure_directory(self.path, self.owner)

    def test_matches(self):
        self.assertFalse(fs.directory_matches(self.path, self.owner, 0o755))
        fs.ensure_directory(self.path, self.owner, 0o755)
        self.assertTrue(fs.directory_matches(self.path, self.owner, 0o755))
        self.assertFalse(fs.directory_matches(self.path, self.owner, 0o700))

    def test_remove(self):
        fs.ensure_directory(os.path.join(self.path, "inner"), self.owner)
        result = fs.remove_directory(self.path)
        self.assertEqual(result.state, State.success)
        self.assertFalse(os.path.exists(self.path))

    def test_remove_absent(self):
        self.assertEqual(fs.remove_directory(self.path).state, State.unchanged)

    def test_remove_conflict(self):
        with open(self.path, "w"):
            pass
        with self.assertRaises(PathConflict):
            fs.remove_directory(self.path)


class TestFile(FilesystemTestCase):

    def test_create(self):
        result = fs.ensure_file(self.path, b"port: 8080\n", self.owner, 0o640)
        self.assertEqual(result.state, State.created)
        self.assertEqual(self.read(), b"port: 8080\n")
        self.assertEqual(mode_of(self.path), 0o640)

    def test_unchanged(self):
        fs.ensure_file(self.path, b"content", self.owner)
        inode = os.stat(self.path).st_ino
        result = fs.ensure_file(self.path, b"content", self.owner)
        self.assertEqual(result.state, State.unchanged)
        self.assertEqual(os.stat(self.path).st_ino, inode)

    def test_overwrite(self):
        fs.ensure_file(self.path, b"old", self.owner)
        result = fs.ensure_file(self.path, b"new", self.owner)
        self.assertEqual(result.state, State.success)
        self.assertEqual(self.read(), b"new")

    @patch("{}.LOG".format(fs.__spec__.name))
    def test_preserve(self, log: Mock):
        fs.ensure_file(self.path, b"port: 9090\n", self.owner)
        result = fs.ensure_file(self.path, b"port: 8080\n", self.owner, overwrite=False)
        log.warning.assert_called_with("Not overwriting modified file %r", self.path)
        self.assertEqual(result.state, State.unchanged)
        self.assertEqual(self.read(), b"port: 9090\n")

    def test_preserve_fixes_mode(self):
        fs.ensure_file(self.path, b"edited", self.owner, 0o600)
        result = fs.ensure_file(self.path, b"shipped", self.owner, 0o644, overwrite=False)
        self.assertEqual(result.state, State.success)
        self.assertEqual(mode_of(self.path), 0o644)
        self.assertEqual(self.read(), b"edited")

    def test_no_temp_files(self):
        fs.ensure_file(self.path, b"one", self.owner)
        fs.ensure_file(self.path, b"two", self.owner)
        self.assertEqual(os.listdir(self.tempdir.name), ["test"])

    def test_conflict(self):
        os.mkdir(self.path)
        with self.assertRaises(PathConflict):
            fs.ensure_file(self.path, b"content", self.owner)

    def test_matches(self):
        fs.ensure_file(self.path, b"edited", self.owner, 0o644)
        self.assertTrue(fs.file_matches(self.path, b"edited", self.owner, 0o644))
        self.assertFalse(fs.file_matches(self.path, b"shipped", self.owner, 0o644))
        self.assertTrue(fs.file_matches(self.path, b"shipped", self.owner, 0o644, overwrite=False))
        self.assertFalse(fs.file_matches(self.path, b"edited", self.owner, 0o600))

    def test_digest_absent(self):
        self.assertIsNone(fs.file_digest(self.path))

    def test_remove(self):
        fs.ensure_file(self.path, b"content", self.owner)
        self.assertEqual(fs.remove_file(self.path).state, State.success)
        self.assertFalse(os.path.lexists(self.path))

    def test_remove_absent(self):
        self.assertEqual(fs.remove_file(self.path).state, State.unchanged)

    def test_remove_conflict(self):
        os.mkdir(self.path)
        with self.assertRaises(PathConflict):
            fs.remove_file(self.path)


class TestSymlink(FilesystemTestCase):

    def test_symlink(self):
        result = fs.ensure_symlink(self.path, "target")
        self.assertEqual(result.state, State.created)
        self.assertTrue(os.path.islink(self.path))
        self.assertEqual(os.readlink(self.path), "target")

    def test_symlink_unchanged(self):
        fs.ensure_symlink(self.path, "target")
        result = fs.ensure_symlink(self.path, "target")
        self.assertEqual(result.state, State.unchanged)

    def test_symlink_existing_link(self):
        fs.ensure_symlink(self.path, "target")
        result = fs.ensure_symlink(self.path, "not-target")
        self.assertEqual(result.state, State.success)
        self.assertEqual(os.readlink(self.path), "not-target")

    def test_symlink_existing_file(self):
        with open(self.path, "w"):
            pass
        with self.assertRaises(PathConflict):
            fs.ensure_symlink(self.path, "target")

    @patch("{}.LOG".format(fs.__spec__.name))
    def test_symlink_replace_file(self, log: Mock):
        with open(self.path, "w") as f:
            f.write("old binary")
        result = fs.ensure_symlink(self.path, "target", replace=True)
        self.assertEqual(result.state, State.success)
        self.assertEqual(os.readlink(self.path), "target")
        log.warning.assert_called_with("Replacing file %r with a symlink", self.path)

    def test_symlink_replace_directory(self):
        os.mkdir(self.path)
        with self.assertRaises(PathConflict):
            fs.ensure_symlink(self.path, "target", replace=True)
        self.assertTrue(os.path.isdir(self.path))

    def test_remove(self):
        fs.ensure_symlink(self.path, "target")
        self.assertEqual(fs.remove_symlink(self.path, "target").state, State.success)
        self.assertFalse(os.path.lexists(self.path))

    @patch("{}.LOG".format(fs.__spec__.name))
    def test_remove_other_link(self, log: Mock):
        fs.ensure_symlink(self.path, "elsewhere")
        result = fs.remove_symlink(self.path, "target")
        log.warning.assert_called_with("Not removing %r, not a link to %r", self.path, "target")
        self.assertEqual(result.state, State.unchanged)
        self.assertTrue(os.path.islink(self.path))


class TestSource(FilesystemTestCase):

    def test_read(self):
        with open(self.path, "wb") as f:
            f.write(b"binary")
        self.assertEqual(fs.read_source(self.path), b"binary")

    def test_missing(self):
        with self.assertRaises(SourceNotFound):
            fs.read_source(self.path)

    def test_directory(self):
        with self.assertRaises(SourceNotFound):
            fs.read_source(self.tempdir.name)


if __name__ == "__main__":
    unittest.main()
