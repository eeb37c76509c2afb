'''Text reports'''

from code_objects import Instruction, Program, ORACLE
from filter_spec import FilterSpec
from bpf_objects import generate
from tcpdump_oracle import synthetic_program
from comparison import compare
import report


def programs():
    spec = FilterSpec(protocol="tcp", dst_port=80).validate()
    reference = Program(synthetic_program(spec), filter_expr=spec.to_tcpdump(),
                        mocked=True, origin=ORACLE)
    return (reference, generate(spec))


def test_center_and_truncate():
    assert report.center("ab", 6) == "  ab  "
    assert report.center("abcdef", 4) == "abcd"
    assert report.truncate("abcdef", 10) == "abcdef"
    assert report.truncate("abcdefghijkl", 8) == "abcde..."


def test_format_generated_program():
    (_, generated) = programs()
    text = report.format_program(generated)
    assert text.startswith("Generated Filter: tcp dport=80\n")
    assert "Instructions: 11\n" in text
    assert "Reasoning: Fail-fast approach: " in text
    assert "Optimizations applied:\n  - Combined protocol and port filtering" in text
    assert "  [ 0] { 0x0028,   0,   0, 0x0000000c }" in text
    assert "  [10] { 0x0006,   0,   0, 0x00000000 }" in text


def test_format_reference_program():
    (reference, _) = programs()
    text = report.format_program(reference)
    assert text.startswith("Tcpdump Filter: tcp and dst port 80\n")
    assert "(Using mock data - tcpdump not available)" in text
    assert "Optimizations applied:" not in text


def test_format_comparison():
    (reference, generated) = programs()
    text = report.format_comparison(compare(reference, generated))
    lines = text.splitlines()
    assert "BPF VALIDATION COMPARISON" in lines[1]
    assert "Source: Mock Data" in text
    assert "✓ Fragment Handling" in text
    assert "✗" not in text
    assert "No significant differences found" in text
    assert "SCORE: 10.0/10 [" in text
    assert "VERDICT: EXCELLENT MATCH" in text
    assert f"KEY TAKEAWAY: {report.TAKEAWAYS['excellent']}" in text
    # the box is rectangular
    box = [line for line in lines if line and line[0] in "┌│├└"]
    assert len({len(line) for line in box}) == 1


def test_key_differences_order():
    reference = generate(FilterSpec(protocol="udp", dst_port=53).validate())
    candidate = generate(FilterSpec(src_ip="192.168.1.1").validate())
    diffs = report.key_differences(compare(reference, candidate))
    assert len(diffs) == report.MAX_DIFFERENCES
    assert diffs[0] == ("!", "CRITICAL: Missing Check Protocol (1 instructions)")


def test_score_bar():
    assert report.score_bar(0.5, width=4) == "[##..]"
    assert report.score_bar(0.0, width=2) == "[..]"


def test_extra_validation_is_not_an_enhancement():
    reference = Program([Instruction(0x06, 0, 0, 0x40000), Instruction(0x06, 0, 0, 0)])
    candidate = generate(FilterSpec(protocol="udp").validate())
    diffs = report.key_differences(compare(reference, candidate))
    assert ("+", "Extra Check IP Protocol (1 instructions)") in diffs
    assert ("+", "Extra Load IP Protocol (1 instructions)") in diffs
    assert not [text for (_, text) in diffs if text.startswith("ENHANCEMENT")]


def test_extra_address_check_is_an_enhancement():
    reference = generate(FilterSpec(protocol="udp").validate())
    candidate = generate(FilterSpec(protocol="udp", dst_ip="10.0.0.1").validate())
    diffs = report.key_differences(compare(reference, candidate))
    assert diffs[0] == ("*", "ENHANCEMENT: Extra Load Dest IP (1 instructions)")
    assert diffs[1] == ("*", "ENHANCEMENT: Extra Check Dest IP (1 instructions)")
