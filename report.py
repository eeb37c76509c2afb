''' cBPF filter generation and validation.
Text reports for programs and comparison results.
'''


#
# Copyright (c) 2023 Red Hat, Inc., Anton Ivanov <anivanov@redhat.com>
# Copyright (c) 2023 Cambridge Greys Ltd <anton.ivanov@cambridgegreys.com>
#

from code_objects import Purpose, ORACLE

WIDTH = 78
LEFT = 38
RIGHT = 39

CORE_PURPOSES = [
    (Purpose.CHECK_ETHERTYPE, "IP Validation"),
    (Purpose.CHECK_PROTOCOL, "Protocol Check"),
    (Purpose.CHECK_SRC_ADDR, "Source IP Filter"),
    (Purpose.CHECK_DST_ADDR, "Dest IP Filter"),
    (Purpose.CHECK_SRC_PORT, "Source Port Filter"),
    (Purpose.CHECK_DST_PORT, "Dest Port Filter"),
    (Purpose.CHECK_FRAGMENT, "Fragment Handling"),
    (Purpose.ACCEPT, "Accept Logic"),
    (Purpose.REJECT, "Reject Logic"),
]

TAKEAWAYS = {
    "excellent": "Candidate successfully implements reference functionality.",
    "good": "Candidate covers core functionality but has some implementation differences.",
    "partial": "Candidate partially implements the required functionality - review needed.",
    "poor": "Candidate requires significant improvements to match reference behavior.",
    "inconclusive": "Nothing to compare - both programs are empty.",
}

MAX_DIFFERENCES = 4

# Extra checks in the candidate which tighten the filter
ENHANCEMENTS = [
    Purpose.LOAD_FRAG_INFO,
    Purpose.CHECK_FRAGMENT,
    Purpose.LOAD_SRC_ADDR,
    Purpose.CHECK_SRC_ADDR,
    Purpose.LOAD_DST_ADDR,
    Purpose.CHECK_DST_ADDR,
]


def center(text, width):
    '''Center text in a fixed width cell'''
    if len(text) >= width:
        return text[:width]
    padding = (width - len(text)) // 2
    return " " * padding + text + " " * (width - padding - len(text))


def truncate(text, width):
    '''Truncate text to width, marking the cut'''
    if len(text) <= width:
        return text
    return text[:width - 3] + "..."


def format_program(program):
    '''Header and indexed bytecode listing'''
    lines = []
    if program.origin == ORACLE:
        lines.append(f"Tcpdump Filter: {program.filter_expr}")
        if program.mocked:
            lines.append("(Using mock data - tcpdump not available)")
    else:
        lines.append(f"Generated Filter: {program.filter_expr}")
    lines.append(f"Instructions: {program.instruction_count}")
    if program.rationale:
        lines.append(f"Reasoning: {program.rationale}")
    if len(program.optimizations) > 0:
        lines.append("Optimizations applied:")
        for note in program.optimizations:
            lines.append(f"  - {note}")
    lines.append("BPF Bytecode:")
    for (counter, insn) in enumerate(program.instructions):
        lines.append(f"  [{counter:2d}] {insn}")
    return "\n".join(lines) + "\n"


def rule(left="─", joint="┬", right="─", split=True):
    '''Horizontal box rule'''
    if split:
        return left + "─" * LEFT + joint + "─" * RIGHT + right
    return left + "─" * WIDTH + right


def key_differences(result):
    '''Most important differences first, at most MAX_DIFFERENCES'''
    diffs = []
    for (missing, purpose) in zip(result.missing_in_second, result.missing_purposes):
        if purpose in (Purpose.CHECK_ETHERTYPE, Purpose.CHECK_PROTOCOL):
            diffs.append((1, "!", "CRITICAL: " + missing))
        else:
            diffs.append((3, "x", missing))
    for (extra, purpose) in zip(result.extra_in_second, result.extra_purposes):
        if purpose in ENHANCEMENTS:
            diffs.append((2, "*", "ENHANCEMENT: " + extra))
        else:
            diffs.append((4, "+", extra))
    for structural in result.structural_diffs:
        diffs.append((5, "~", structural))
    diffs.sort(key=lambda diff: diff[0])
    return [(icon, text) for (_, icon, text) in diffs[:MAX_DIFFERENCES]]


def score_bar(score, width=50):
    '''[#####.....] style bar'''
    filled = int(score * width)
    return "[" + "#" * filled + "." * (width - filled) + "]"


def format_comparison(result):
    '''Side by side comparison with verdict summary'''
    ref = result.reference
    cand = result.candidate
    lines = [
        rule("┌", "─", "┐", split=False),
        "│" + center("BPF VALIDATION COMPARISON", WIDTH) + "│",
        rule("├", "┬", "┤"),
        "│" + center("TCPDUMP REFERENCE", LEFT) + "│" + center("GENERATED CANDIDATE", RIGHT) + "│",
        rule("├", "┼", "┤"),
        f"│ Instructions: {len(ref):<22d} │ Instructions: {len(cand):<23d} │",
        f"│ Filter: {truncate(ref.filter_expr, 28):<28s} │ Filter: {truncate(cand.filter_expr, 29):<29s} │",
    ]
    source = "Mock Data" if ref.mocked else "Real tcpdump"
    lines.append(f"│ Source: {source:<28s} │ Source: {'Generated':<29s} │")
    lines.append(rule("├", "┼", "┤"))

    for (purpose, name) in CORE_PURPOSES:
        ref_has = purpose in result.reference_counts
        cand_has = purpose in result.candidate_counts
        if not (ref_has or cand_has):
            continue
        ref_mark = "✓" if ref_has else "✗"
        cand_mark = "✓" if cand_has else "✗"
        lines.append(f"│ {ref_mark} {name:<34s} │ {cand_mark} {name:<35s} │")

    lines.append(rule("├", "┴", "┤"))
    lines.append("│" + center("KEY DIFFERENCES", WIDTH) + "│")
    lines.append(rule("├", "─", "┤", split=False))
    diffs = key_differences(result)
    if len(diffs) == 0:
        lines.append("│" + center("No significant differences found", WIDTH) + "│")
    for (icon, text) in diffs:
        lines.append(f"│ {icon} {truncate(text, WIDTH - 4):<{WIDTH - 4}s} │")
    lines.append(rule("└", "─", "┘", split=False))

    lines.append("")
    lines.append(f"SCORE: {result.score * 10:.1f}/10 {score_bar(result.score)}")
    lines.append("")
    lines.append(f"VERDICT: {result.verdict}")
    lines.append("")
    lines.append(f"QUICK STATS: {len(result.matches)} matches  "
                 f"{result.issues()} issues  {len(result.extra_in_second)} enhancements")
    lines.append("")
    lines.append(f"KEY TAKEAWAY: {TAKEAWAYS[result.rating]}")
    return "\n".join(lines) + "\n"
