"""Test the XFS and ext4 quota backends."""

import pytest

from nfsquota.quota import (
    Ext4Backend,
    ProjectMapping,
    QuotaError,
    QuotaUnavailableError,
    XFSBackend,
)
from nfsquota.quota.base import QuotaBackend, parse_kib

XFS_REPORT = """\
Project quota on /export (/dev/sdb1)
                               Blocks
Project ID       Used       Soft       Hard    Warn/Grace
---------- --------------------------------------------------
#0                  0          0          0     00 [--------]
pv_pvc_1         1024          0    1048576     00 [--------]
#1234             512          0       2048     00 [--------]
#99                10          0        100     00 [--------]
pv_pvc_3           20          0          0     00 [--------]

"""

REPQUOTA_REPORT = """\
*** Report for project quotas on device /dev/sdb1
Block grace time: 7days; Inode grace time: 7days
                        Block limits                File limits
Project         used    soft    hard  grace    used  soft  hard  grace
----------------------------------------------------------------------
#0        --      20       0       0              2     0     0
pv_pvc_1  --    1024       0 1048576              5     0     0
#1234     +-    4096       0    2048  6days       3     0     0

"""


@pytest.fixture
def mapping(fs):
    """A ProjectMapping with three projects."""
    fs.create_file(
        "/etc/projects",
        contents="1:/export/ns/pvc-1\n1234:/export/ns/pvc-2\n3:/export/ns/pvc-3\n",
    )
    fs.create_file("/etc/projid", contents="pv_pvc_1:1\npv_pvc_3:3\n")
    return ProjectMapping("/etc/projects", "/etc/projid")


@pytest.fixture
def xfs(mapping):
    return XFSBackend("/export", mapping, timeout=10)


@pytest.fixture
def ext4(mapping):
    return Ext4Backend("/export", mapping, timeout=10)


def test_bad_timeout(mapping):
    with pytest.raises(ValueError):
        XFSBackend("/export", mapping, timeout=0)


def test_size_kib():
    assert QuotaBackend.size_kib(2**30) == 2**20
    assert QuotaBackend.size_kib(2047) == 1
    assert QuotaBackend.size_kib(1) == 1
    assert QuotaBackend.size_kib(0) == 1


def test_parse_kib():
    assert parse_kib("12") == 12
    assert parse_kib("2M") == 2048
    assert parse_kib("1g") == 2**20
    assert parse_kib(" 3k ") == 3

    with pytest.raises(ValueError):
        parse_kib("[--------]")


@pytest.mark.run_command_result(0, "output", "")
def test_run(xfs, mock_run_command):
    """Arguments are stringified; the timeout is passed on."""

    assert xfs.run("setquota", "-P", 12) == "output"

    report = mock_run_command()
    assert report["cmd"] == ["setquota", "-P", "12"]
    assert report["timeout"] == 10


@pytest.mark.run_command_result(1, "out", "err")
def test_run_fail(xfs, mock_run_command):
    with pytest.raises(QuotaError, match=r"command failed \[1\]"):
        xfs.run("false")


@pytest.mark.run_command_result(None, "", "")
def test_run_timeout(xfs, mock_run_command):
    with pytest.raises(QuotaError, match="timed out"):
        xfs.run("sleep", "100")


@pytest.mark.run_command_result(0, "Project quota state on /export\n", "")
def test_xfs_available(xfs, mock_run_command):
    xfs.check_available()

    assert mock_run_command()["calls"] == [
        ["xfs_quota", "-V"],
        ["xfs_quota", "-x", "-c", "state", "/export"],
    ]


@pytest.mark.run_command_results({"xfs_quota -V": (127, "", "No such file")})
def test_xfs_not_installed(xfs, mock_run_command):
    with pytest.raises(QuotaUnavailableError, match="xfs_quota command not found"):
        xfs.check_available()


@pytest.mark.run_command_results({"xfs_quota -x -c state": (1, "", "bad mount")})
def test_xfs_state_fails(xfs, mock_run_command):
    with pytest.raises(QuotaUnavailableError):
        xfs.check_available()


def test_xfs_apply(xfs, mock_run_command):
    xfs.apply("/export/ns/pvc-9", "pv_pvc_9", 5678, 2**30)

    assert mock_run_command()["calls"] == [
        ["xfs_quota", "-x", "-c", "project -s -p /export/ns/pvc-9 5678", "/export"],
        ["xfs_quota", "-x", "-c", "limit -p bhard=1048576k 5678", "/export"],
    ]

    # Mapping updated
    assert xfs.mapping.find_by_path("/export/ns/pvc-9") == ("5678", "pv_pvc_9")


@pytest.mark.run_command_results({"xfs_quota -x -c limit": (1, "", "no")})
def test_xfs_apply_fail(xfs, mock_run_command):
    with pytest.raises(QuotaError):
        xfs.apply("/export/ns/pvc-9", "pv_pvc_9", 5678, 2**30)


@pytest.mark.run_command_result(0, XFS_REPORT, "")
def test_xfs_report(xfs, mock_run_command):
    quota_map, usage_map = xfs.report()

    assert mock_run_command()["cmd"] == [
        "xfs_quota",
        "-x",
        "-c",
        "report -p -b",
        "/export",
    ]

    assert quota_map == {
        "/export/ns/pvc-1": 1048576 * 1024,
        "/export/ns/pvc-2": 2048 * 1024,
    }
    assert usage_map == {
        "/export/ns/pvc-1": 1024 * 1024,
        "/export/ns/pvc-2": 512 * 1024,
        "/export/ns/pvc-3": 20 * 1024,
    }


@pytest.mark.run_command_result(0, "prjquota,rw,relatime\n", "")
def test_ext4_available(ext4, mock_run_command):
    ext4.check_available()

    assert mock_run_command()["calls"] == [
        ["setquota", "-V"],
        ["findmnt", "-n", "-o", "OPTIONS", "/export"],
    ]


@pytest.mark.run_command_results({"setquota -V": (127, "", "No such file")})
def test_ext4_not_installed(ext4, mock_run_command):
    with pytest.raises(QuotaUnavailableError, match="install quota package"):
        ext4.check_available()


@pytest.mark.run_command_results({"findmnt": (1, "", "")})
def test_ext4_findmnt_fails(ext4, mock_run_command):
    """Failing to check the mount options isn't fatal."""
    ext4.check_available()


def test_ext4_apply(ext4, mock_run_command):
    ext4.apply("/export/ns/pvc-9", "pv_pvc_9", 5678, 2**30)

    assert mock_run_command()["calls"] == [
        ["chattr", "-R", "+P", "-p", "5678", "/export/ns/pvc-9"],
        ["setquota", "-P", "5678", "0", "1048576", "0", "0", "/export"],
    ]
    assert ext4.mapping.find_by_path("/export/ns/pvc-9") == ("5678", "pv_pvc_9")


@pytest.mark.run_command_results({"chattr": (1, "", "Operation not supported")})
def test_ext4_chattr_fails(ext4, mock_run_command):
    """The limit is still set if chattr fails."""
    ext4.apply("/export/ns/pvc-9", "pv_pvc_9", 5678, 2**30)

    assert mock_run_command()["cmd"][0] == "setquota"


@pytest.mark.run_command_results({"setquota": (1, "", "no")})
def test_ext4_apply_fail(ext4, mock_run_command):
    with pytest.raises(QuotaError):
        ext4.apply("/export/ns/pvc-9", "pv_pvc_9", 5678, 2**30)


@pytest.mark.run_command_result(0, REPQUOTA_REPORT, "")
def test_ext4_report(ext4, mock_run_command):
    quota_map, usage_map = ext4.report()

    assert mock_run_command()["cmd"] == ["repquota", "-P", "/export"]

    assert quota_map == {
        "/export/ns/pvc-1": 1048576 * 1024,
        "/export/ns/pvc-2": 2048 * 1024,
    }
    assert usage_map == {
        "/export/ns/pvc-1": 1024 * 1024,
        "/export/ns/pvc-2": 4096 * 1024,
    }


@pytest.mark.run_command_result(
    0, "pv_pvc_1--    1024       0 1048576              5     0     0\n", ""
)
def test_ext4_report_glued_flags(ext4, mock_run_command):
    """Flags glued onto the project name are handled."""
    quota_map, usage_map = ext4.report()

    assert quota_map == {"/export/ns/pvc-1": 1048576 * 1024}
    assert usage_map == {"/export/ns/pvc-1": 1024 * 1024}


def test_remove_project_entry(xfs):
    assert xfs.remove_project_entry("/export/ns/pvc-1")
    assert not xfs.remove_project_entry("/export/ns/pvc-1")

    assert xfs.mapping.find_by_path("/export/ns/pvc-1") == (None, None)
