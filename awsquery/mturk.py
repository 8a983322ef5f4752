"""Client for the Mechanical Turk requester API."""

from __future__ import annotations

import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime, timezone
from urllib.parse import urlencode, urlsplit, urlunsplit

import requests

from awsquery.signing import Auth, sign_mturk

__all__ = [
    "DEFAULT_URL",
    "SERVICE",
    "MTurkError",
    "Price",
    "QualificationRequirement",
    "ExternalQuestion",
    "HIT",
    "SearchHITsResult",
    "MTurk",
]

DEFAULT_URL = "http://mechanicalturk.amazonaws.com/"
SERVICE = "AWSMechanicalTurkRequester"
EXTERNAL_QUESTION_NS = (
    "http://mechanicalturk.amazonaws.com/AWSMechanicalTurkDataSchemas/2006-07-14/ExternalQuestion.xsd"
)


class MTurkError(Exception):
    """An error returned by Mechanical Turk."""

    def __init__(self, status_code: int = 0, code: str = "", message: str = "", request_id: str = "") -> None:
        self.status_code = status_code
        self.code = code
        self.message = message
        self.request_id = request_id
        super().__init__(message)

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# XML helpers


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _path(elem: ET.Element, *names: str) -> list[ET.Element]:
    nodes = [elem]
    for name in names:
        nodes = [child for node in nodes for child in node if _local(child.tag) == name]
    return nodes


def _first(elem: ET.Element, *names: str) -> ET.Element | None:
    nodes = _path(elem, *names)
    return nodes[0] if nodes else None


def _text(elem: ET.Element, *names: str) -> str:
    node = _first(elem, *names)
    return "".join(node.itertext()) if node is not None else ""


def _uint(elem: ET.Element, *names: str) -> int:
    value = _text(elem, *names).strip()
    return int(value) if value else 0


def _to_xml(tag: str, children: list[tuple[str, str]], attrib: dict[str, str] | None = None) -> str:
    root = ET.Element(tag, attrib or {})
    for name, value in children:
        ET.SubElement(root, name).text = value
    return ET.tostring(root, encoding="unicode", short_empty_elements=False)


# ---------------------------------------------------------------------------
# Data


@dataclass
class Price:
    """A reward amount."""

    amount: str = ""
    currency_code: str = ""
    formatted_price: str = ""

    @classmethod
    def _from_xml(cls, elem: ET.Element | None) -> Price:
        if elem is None:
            return cls()
        return cls(
            amount=_text(elem, "Amount"),
            currency_code=_text(elem, "CurrencyCode"),
            formatted_price=_text(elem, "FormattedPrice"),
        )


@dataclass
class QualificationRequirement:
    """A requirement a worker must meet to take a HIT."""

    qualification_type_id: str = ""
    comparator: str = ""
    integer_value: int = 0
    locale_value: str = ""
    required_to_preview: str = ""

    def to_xml(self) -> str:
        return _to_xml(
            "QualificationRequirement",
            [
                ("QualificationTypeId", self.qualification_type_id),
                ("Comparator", self.comparator),
                ("IntegerValue", str(self.integer_value)),
                ("LocaleValue", self.locale_value),
                ("RequiredToPreview", self.required_to_preview),
            ],
        )

    @classmethod
    def _from_xml(cls, elem: ET.Element | None) -> QualificationRequirement:
        if elem is None:
            return cls()
        return cls(
            qualification_type_id=_text(elem, "QualificationTypeId"),
            comparator=_text(elem, "Comparator"),
            integer_value=_uint(elem, "IntegerValue"),
            locale_value=_text(elem, "LocaleValue"),
            required_to_preview=_text(elem, "RequiredToPreview"),
        )


@dataclass
class ExternalQuestion:
    """A question hosted on an external web page."""

    external_url: str = ""
    frame_height: int = 0

    def to_xml(self) -> str:
        return _to_xml(
            "ExternalQuestion",
            [("ExternalURL", self.external_url), ("FrameHeight", str(self.frame_height))],
            {"xmlns": EXTERNAL_QUESTION_NS},
        )

    @classmethod
    def _from_xml(cls, elem: ET.Element | None) -> ExternalQuestion:
        if elem is None:
            return cls()
        return cls(external_url=_text(elem, "ExternalURL"), frame_height=_uint(elem, "FrameHeight"))


@dataclass
class HIT:
    """A human intelligence task."""

    hit_id: str = ""
    hit_type_id: str = ""
    creation_time: str = ""
    title: str = ""
    description: str = ""
    keywords: str = ""
    hit_status: str = ""
    reward: Price = field(default_factory=Price)
    lifetime_in_seconds: int = 0
    assignment_duration_in_seconds: int = 0
    max_assignments: int = 0
    auto_approval_delay_in_seconds: int = 0
    qualification_requirement: QualificationRequirement = field(default_factory=QualificationRequirement)
    question: ExternalQuestion = field(default_factory=ExternalQuestion)
    requester_annotation: str = ""
    number_of_similar_hits: int = 0
    hit_review_status: str = ""
    number_of_assignments_pending: int = 0
    number_of_assignments_available: int = 0
    number_of_assignments_completed: int = 0
    is_valid: str = ""
    request_errors: list[MTurkError] = field(default_factory=list)

    @classmethod
    def _from_xml(cls, elem: ET.Element | None) -> HIT:
        if elem is None:
            return cls()
        errors = [
            MTurkError(code=_text(e, "Code"), message=_text(e, "Message"))
            for e in _path(elem, "Request", "Errors", "Error")
        ]
        return cls(
            hit_id=_text(elem, "HITId"),
            hit_type_id=_text(elem, "HITTypeId"),
            creation_time=_text(elem, "CreationTime"),
            title=_text(elem, "Title"),
            description=_text(elem, "Description"),
            keywords=_text(elem, "Keywords"),
            hit_status=_text(elem, "HITStatus"),
            reward=Price._from_xml(_first(elem, "Reward")),
            lifetime_in_seconds=_uint(elem, "LifetimeInSeconds"),
            assignment_duration_in_seconds=_uint(elem, "AssignmentDurationInSeconds"),
            max_assignments=_uint(elem, "MaxAssignments"),
            auto_approval_delay_in_seconds=_uint(elem, "AutoApprovalDelayInSeconds"),
            qualification_requirement=QualificationRequirement._from_xml(
                _first(elem, "QualificationRequirement")
            ),
            question=ExternalQuestion._from_xml(_first(elem, "Question")),
            requester_annotation=_text(elem, "RequesterAnnotation"),
            number_of_similar_hits=_uint(elem, "NumberofSimilarHITs"),
            hit_review_status=_text(elem, "HITReviewStatus"),
            number_of_assignments_pending=_uint(elem, "NumberOfAssignmentsPending"),
            number_of_assignments_available=_uint(elem, "NumberOfAssignmentsAvailable"),
            number_of_assignments_completed=_uint(elem, "NumberOfAssignmentsCompleted"),
            is_valid=_text(elem, "Request", "IsValid"),
            request_errors=errors,
        )


@dataclass
class SearchHITsResult:
    num_results: int = 0
    page_number: int = 0
    total_num_results: int = 0
    hits: list[HIT] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Client


class MTurk:
    """Requester operations against a Mechanical Turk endpoint."""

    def __init__(self, auth: Auth, url: str = DEFAULT_URL, session: requests.Session | None = None) -> None:
        self.auth = auth
        self.url = url
        self.session = session if session is not None else requests.Session()

    def _query(self, operation: str, params: dict[str, str]) -> ET.Element:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        params = dict(params)
        params["AWSAccessKeyId"] = self.auth.access_key
        params["Service"] = SERVICE
        params["Timestamp"] = timestamp
        params["Operation"] = operation
        sign_mturk(self.auth, SERVICE, operation, timestamp, params)

        parts = urlsplit(self.url)
        url = urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(sorted(params.items())), parts.fragment))
        response = self.session.get(url)
        if response.status_code != 200:
            raise MTurkError(
                status_code=response.status_code,
                message=f"{response.status_code}: unexpected status code",
            )
        return ET.fromstring(response.content.strip())

    def create_hit(
        self,
        title: str,
        description: str,
        question: ExternalQuestion,
        reward: Price,
        assignment_duration: int,
        lifetime: int,
        keywords: str = "",
        max_assignments: int = 0,
        qualification_requirement: QualificationRequirement | None = None,
        requester_annotation: str = "",
    ) -> HIT:
        """Create a HIT; empty or zero optional values are left out of the request."""
        params = {
            "Title": title,
            "Description": description,
            "Question": question.to_xml(),
            "Reward.1.Amount": reward.amount,
            "Reward.1.CurrencyCode": reward.currency_code,
            "AssignmentDurationInSeconds": str(assignment_duration),
            "LifetimeInSeconds": str(lifetime),
        }
        if keywords:
            params["Keywords"] = keywords
        if max_assignments != 0:
            params["MaxAssignments"] = str(max_assignments)
        if qualification_requirement is not None:
            params["QualificationRequirement"] = qualification_requirement.to_xml()
        if requester_annotation:
            params["RequesterAnnotation"] = requester_annotation
        return HIT._from_xml(_first(self._query("CreateHIT", params), "HIT"))

    def create_hit_of_type(
        self,
        hit_type_id: str,
        question: ExternalQuestion,
        lifetime: int,
        max_assignments: int = 0,
        requester_annotation: str = "",
    ) -> HIT:
        """Create a HIT of an existing HIT type."""
        params = {
            "HITTypeId": hit_type_id,
            "Question": question.to_xml(),
            "LifetimeInSeconds": str(lifetime),
        }
        if max_assignments != 0:
            params["MaxAssignments"] = str(max_assignments)
        if requester_annotation:
            params["RequesterAnnotation"] = requester_annotation
        return HIT._from_xml(_first(self._query("CreateHIT", params), "HIT"))

    def search_hits(self) -> SearchHITsResult:
        """List the requester's HITs."""
        root = self._query("SearchHITs", {})
        result = _first(root, "SearchHITsResult")
        if result is None:
            return SearchHITsResult()
        return SearchHITsResult(
            num_results=_uint(result, "NumResults"),
            page_number=_uint(result, "PageNumber"),
            total_num_results=_uint(result, "TotalNumResults"),
            hits=[HIT._from_xml(h) for h in _path(result, "HIT")],
        )