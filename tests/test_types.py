import ntpath

import pytest

from clamav_scan_service.clamd import CommandFormat, CommandRunDetails, \
    FileSeparator, ScanResult


def test_command_format():
    assert CommandFormat.NULL_CHAR.prefix == "z"
    assert CommandFormat.NULL_CHAR.terminator == "\x00"
    assert CommandFormat.NEW_LINE.prefix == "n"
    assert CommandFormat.NEW_LINE.terminator == "\n"


def test_scan_result_ok():
    result = ScanResult.ok()

    assert result.is_ok()
    assert not result.has_virus()
    assert not result.virus_found
    assert str(result) == "ScanResult: OK"


def test_scan_result_virus_found():
    result = ScanResult.virus_found_result({"/tmp/a.txt": ["Eicar"]})

    assert not result.is_ok()
    assert result.has_virus()
    assert result.virus_found == {"/tmp/a.txt": ["Eicar"]}
    assert "File: /tmp/a.txt" in str(result)
    assert "Virus Signatures: Eicar" in str(result)


def test_scan_result_read_only():
    result = ScanResult.virus_found_result({"/tmp/a.txt": ["Eicar"]})

    with pytest.raises(TypeError):
        result.virus_found["/tmp/b.txt"] = ["Other"]


def test_scan_result_copies_input():
    found = {"/tmp/a.txt": ["Eicar"]}
    result = ScanResult.virus_found_result(found)
    found["/tmp/a.txt"].append("Other")

    assert result.virus_found == {"/tmp/a.txt": ["Eicar"]}


def test_merge_clean_into_infected():
    infected = ScanResult.virus_found_result({"/tmp/a.txt": ["Eicar"]})
    infected.merge_with(ScanResult.ok())
    infected.merge_with(None)

    assert infected == ScanResult.virus_found_result({"/tmp/a.txt": ["Eicar"]})


def test_merge_infected_into_clean():
    result = ScanResult.ok()
    result.merge_with(ScanResult.virus_found_result({"/tmp/a.txt": ["X"]}))

    assert result.has_virus()
    assert result.virus_found == {"/tmp/a.txt": ["X"]}


def test_merge_keeps_order_and_duplicates():
    a = ScanResult.virus_found_result({"/f1": ["A", "B"], "/f2": ["C"]})
    b = ScanResult.virus_found_result({"/f1": ["B", "D"], "/f3": ["E"]})
    a.merge_with(b)

    assert a.virus_found == {
        "/f1": ["A", "B", "B", "D"],
        "/f2": ["C"],
        "/f3": ["E"],
    }
    # the merged result is not altered
    assert b.virus_found == {"/f1": ["B", "D"], "/f3": ["E"]}


def test_command_run_details_escapes_control_chars():
    details = CommandRunDetails.create("zPING\x00", "PONG\x00", 12)

    assert details.command == "zPING[0"
    assert details.response == "PONG\x00"
    assert details.elapsed_millis == 12

    details = CommandRunDetails.create("nSTATS\n", "", 0)
    assert details.command == "nSTATS[n"


@pytest.mark.parametrize("millis, expected", [
    (0, "0ms"),
    (999, "999ms"),
    (1500, "1s 500ms"),
    (61_000, "1m 1s"),
    (3_725_000, "62m 5s"),
])
def test_command_run_details_elapsed_formatted(millis, expected):
    details = CommandRunDetails.create("zPING\x00", "PONG", millis)

    assert details.elapsed_formatted() == expected
    assert str(details).startswith(f"CommandRunDetails ({expected}):\n")


def test_file_separator():
    assert FileSeparator.UNIX.to_server_path(r"C:\data\a.txt") == \
        "C:/data/a.txt"
    assert FileSeparator.WINDOWS.to_server_path("/data/a.txt") == \
        r"\data\a.txt"
    assert FileSeparator.LOCAL.to_server_path("/data/a\\b.txt") == \
        "/data/a\\b.txt"
    assert FileSeparator.WINDOWS.separator == ntpath.sep
