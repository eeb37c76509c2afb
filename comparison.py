''' cBPF filter generation and validation.
Comparison of a reference program with a candidate program.

The comparison is a structural multiset comparison of purpose tags.
It does not look at branch wiring: two programs with the same purpose
histogram and different control flow compare as equivalent.

Both programs are classified the same way. Generation time purposes
are used only when both programs carry them on every instruction,
otherwise both go through the inference.
'''


#
# Copyright (c) 2023 Red Hat, Inc., Anton Ivanov <anivanov@redhat.com>
# Copyright (c) 2023 Cambridge Greys Ltd <anton.ivanov@cambridgegreys.com>
#

import logging
from typing import NamedTuple
from code_objects import Purpose, Program
from semantics import classify_program, is_tagged

LOG = logging.getLogger(__name__)

EXCELLENT = "excellent"
GOOD = "good"
PARTIAL = "partial"
POOR = "poor"
INCONCLUSIVE = "inconclusive"

# (minimum score, rating, verdict), checked in order
THRESHOLDS = [
    (0.8, EXCELLENT, "EXCELLENT MATCH: Candidate closely matches reference behavior"),
    (0.6, GOOD, "GOOD MATCH: Candidate implements core functionality with some differences"),
    (0.4, PARTIAL, "PARTIAL MATCH: Candidate covers some functionality but has significant gaps"),
    (0.0, POOR, "POOR MATCH: Candidate differs significantly from reference approach"),
]

INCONCLUSIVE_VERDICT = "INCONCLUSIVE: No comparable instructions found"

# Missing any of these in the candidate is always critical
CRITICAL = {
    Purpose.CHECK_ETHERTYPE: "Missing IP validation",
    Purpose.CHECK_PROTOCOL: "Missing protocol validation",
}

ADDRESS_CHECKS = [Purpose.CHECK_SRC_ADDR, Purpose.CHECK_DST_ADDR]


class ComparisonResult(NamedTuple):
    '''Outcome of compare(), read-only'''
    reference: Program
    candidate: Program
    reference_semantic: tuple
    candidate_semantic: tuple
    reference_counts: dict
    candidate_counts: dict
    matches: tuple
    differences: tuple
    missing_in_second: tuple
    missing_purposes: tuple
    extra_in_second: tuple
    extra_purposes: tuple
    structural_diffs: tuple
    score: float
    rating: str
    verdict: str

    def issues(self):
        '''Differences plus purposes missing in the candidate'''
        return len(self.differences) + len(self.missing_in_second)

    def to_dict(self):
        '''Serializable form, programs are left to ProgramEncoder'''
        return {
            "reference": self.reference,
            "candidate": self.candidate,
            "reference_semantic": [sem.to_dict() for sem in self.reference_semantic],
            "candidate_semantic": [sem.to_dict() for sem in self.candidate_semantic],
            "matches": list(self.matches),
            "differences": list(self.differences),
            "missing_in_second": list(self.missing_in_second),
            "extra_in_second": list(self.extra_in_second),
            "structural_diffs": list(self.structural_diffs),
            "score": self.score,
            "rating": self.rating,
            "verdict": self.verdict,
        }


def histogram(semantic):
    '''Purpose -> count, in order of first appearance'''
    counts = {}
    for sem in semantic:
        counts[sem.purpose] = counts.get(sem.purpose, 0) + 1
    return counts


def has_purpose(semantic, purposes):
    '''Check if any instruction has one of the purposes'''
    if isinstance(purposes, Purpose):
        purposes = [purposes]
    for sem in semantic:
        if sem.purpose in purposes:
            return True
    return False


def compare_semantics(ref_counts, cand_counts):
    '''Match up purpose histograms.
       Returns (matches, differences, missing, missing purposes,
       extra, extra purposes).
    '''
    matches = []
    differences = []
    missing = []
    missing_purposes = []
    extra = []
    extra_purposes = []

    for (purpose, ref_count) in ref_counts.items():
        try:
            cand_count = cand_counts[purpose]
        except KeyError:
            missing.append(f"Missing {purpose} ({ref_count} instructions)")
            missing_purposes.append(purpose)
            continue
        if ref_count == cand_count:
            matches.append(f"Both implement {purpose} ({ref_count} instructions)")
        else:
            differences.append(f"{purpose}: reference has {ref_count}, candidate has {cand_count}")

    for (purpose, cand_count) in cand_counts.items():
        if purpose not in ref_counts:
            extra.append(f"Extra {purpose} ({cand_count} instructions)")
            extra_purposes.append(purpose)

    return (matches, differences, missing, missing_purposes, extra, extra_purposes)


def compare_structure(reference, candidate, ref_semantic, cand_semantic):
    '''Shape of the programs rather than their histograms.
       Returns (matches, structural differences), an equal
       instruction count counts as a match.
    '''
    matches = []
    structural = []

    delta = len(candidate) - len(reference)
    if delta == 0:
        matches.append("Same instruction count")
    elif delta > 0:
        structural.append(f"Candidate has {delta} more instructions than reference")
    else:
        structural.append(f"Candidate has {-delta} fewer instructions than reference")

    if has_purpose(cand_semantic, Purpose.CHECK_FRAGMENT) and \
            not has_purpose(ref_semantic, Purpose.CHECK_FRAGMENT):
        structural.append("Candidate includes fragment handling that reference does not have")

    if has_purpose(cand_semantic, ADDRESS_CHECKS) and \
            not has_purpose(ref_semantic, ADDRESS_CHECKS):
        structural.append("Candidate implements IP address filtering that reference does not have")

    return (matches, structural)


def calculate_verdict(matches, differences, missing, extra, missing_purposes, empty):
    '''Returns (score, rating, verdict)'''
    total = len(matches) + len(differences) + len(missing) + len(extra)

    # two empty programs still "match" on instruction count
    if total == 0 or empty:
        return (0.0, INCONCLUSIVE, INCONCLUSIVE_VERDICT)

    score = len(matches) / total

    for (threshold, rating, verdict) in THRESHOLDS:
        if score >= threshold:
            break

    for purpose in missing_purposes:
        if purpose in CRITICAL:
            verdict = f"CRITICAL ISSUE: {verdict} ({CRITICAL[purpose]})"
            break

    return (score, rating, verdict)


def compare(reference, candidate):
    '''Compare two programs by the purpose of their instructions'''
    trust_tags = is_tagged(reference) and is_tagged(candidate)
    ref_semantic = tuple(classify_program(reference, trust_tags=trust_tags))
    cand_semantic = tuple(classify_program(candidate, trust_tags=trust_tags))
    ref_counts = histogram(ref_semantic)
    cand_counts = histogram(cand_semantic)

    (matches, differences, missing, missing_purposes, extra, extra_purposes) = \
        compare_semantics(ref_counts, cand_counts)
    (same_shape, structural) = compare_structure(reference, candidate, ref_semantic, cand_semantic)
    matches.extend(same_shape)

    (score, rating, verdict) = calculate_verdict(
        matches, differences, missing, extra, missing_purposes,
        empty=not (ref_semantic or cand_semantic)
    )
    LOG.info("comparison complete: %s (score %.2f, tags %s)",
             rating, score, "trusted" if trust_tags else "inferred")

    return ComparisonResult(
        reference=reference,
        candidate=candidate,
        reference_semantic=ref_semantic,
        candidate_semantic=cand_semantic,
        reference_counts=ref_counts,
        candidate_counts=cand_counts,
        matches=tuple(matches),
        differences=tuple(differences),
        missing_in_second=tuple(missing),
        missing_purposes=tuple(missing_purposes),
        extra_in_second=tuple(extra),
        extra_purposes=tuple(extra_purposes),
        structural_diffs=tuple(structural),
        score=score,
        rating=rating,
        verdict=verdict,
    )
