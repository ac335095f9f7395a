"""
FHIR R4 parser that converts provider resources into timeline entries.
Also extracts patient identifiers and organization details used while linking.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from dateutil.parser import isoparse

from emr.exceptions import SyncError


@dataclass
class NormalizedEntry:
    """Provider-agnostic view of one clinical resource"""
    resource_type: str
    resource_id: str
    category: str
    effective_date: datetime
    title: str
    summary: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    @property
    def search_terms(self) -> str:
        parts = [self.title, self.summary or '', self.resource_type, self.category] + self.tags
        return ' '.join(p for p in parts if p).lower()


def parse_fhir_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse a FHIR date/dateTime/instant into a naive UTC datetime"""
    if not value:
        return None
    try:
        parsed = isoparse(value)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class FHIRParser:
    """Parses FHIR resources into normalized timeline entries."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._normalizers = {
            'Observation': self._normalize_observation,
            'DiagnosticReport': self._normalize_diagnostic_report,
            'MedicationRequest': self._normalize_medication_request,
            'MedicationStatement': self._normalize_medication_statement,
            'AllergyIntolerance': self._normalize_allergy,
            'Immunization': self._normalize_immunization,
            'Procedure': self._normalize_procedure,
            'Encounter': self._normalize_encounter,
        }

    @property
    def supported_resource_types(self) -> Tuple[str, ...]:
        return tuple(self._normalizers)

    def supports(self, resource_type: str) -> bool:
        return resource_type in self._normalizers

    def normalize(self, resource: Dict) -> NormalizedEntry:
        """
        Normalize one FHIR resource

        Raises:
            SyncError: Unsupported type, missing id, or no usable date
        """
        resource_type = resource.get('resourceType')
        resource_id = resource.get('id')
        normalizer = self._normalizers.get(resource_type)
        if normalizer is None:
            raise SyncError(resource_type or 'Unknown', f"Unsupported resource type '{resource_type}'",
                            code='unsupported_resource_type')
        if not resource_id:
            raise SyncError(resource_type, "Resource has no id", code='invalid_resource')

        category, date_value, title, summary, tags = normalizer(resource)
        effective_date = parse_fhir_datetime(date_value) or parse_fhir_datetime(
            (resource.get('meta') or {}).get('lastUpdated'))
        if effective_date is None:
            raise SyncError(resource_type, "Resource has no usable clinical date", resource_id=resource_id,
                            code='invalid_resource')

        return NormalizedEntry(
            resource_type=resource_type,
            resource_id=resource_id,
            category=category,
            effective_date=effective_date,
            title=(title or resource_type)[:500],
            summary=summary,
            tags=[t for t in tags if t],
        )

    # Per-resource normalizers return (category, date string, title, summary, tags)

    def _normalize_observation(self, obs: Dict):
        is_vital = any(
            coding.get('code') == 'vital-signs'
            for category in obs.get('category') or []
            for coding in category.get('coding') or []
        )
        date_value = (obs.get('effectiveDateTime') or obs.get('effectiveInstant')
                      or (obs.get('effectivePeriod') or {}).get('start') or obs.get('issued'))
        summary = self._extract_observation_value(obs)
        if not summary and obs.get('component'):
            parts = []
            for component in obs['component']:
                value = self._extract_observation_value(component)
                if value:
                    parts.append(f"{self._extract_concept_text(component.get('code'))}: {value}")
            summary = '; '.join(parts) or None
        interpretation = self._extract_concept_text((obs.get('interpretation') or [None])[0])
        return ('vital' if is_vital else 'lab', date_value,
                self._extract_concept_text(obs.get('code')), summary,
                [obs.get('status'), interpretation])

    def _normalize_diagnostic_report(self, report: Dict):
        date_value = (report.get('effectiveDateTime')
                      or (report.get('effectivePeriod') or {}).get('start') or report.get('issued'))
        return ('lab', date_value, self._extract_concept_text(report.get('code')),
                report.get('conclusion'), [report.get('status')])

    def _normalize_medication_request(self, med: Dict):
        return ('medication', med.get('authoredOn'), self._extract_medication_name(med),
                self._extract_dosage_text(med.get('dosageInstruction')), [med.get('status'), med.get('intent')])

    def _normalize_medication_statement(self, med: Dict):
        date_value = (med.get('effectiveDateTime')
                      or (med.get('effectivePeriod') or {}).get('start') or med.get('dateAsserted'))
        return ('medication', date_value, self._extract_medication_name(med),
                self._extract_dosage_text(med.get('dosage')), [med.get('status')])

    def _normalize_allergy(self, allergy: Dict):
        reactions = []
        for reaction in allergy.get('reaction') or []:
            if reaction.get('description'):
                reactions.append(reaction['description'])
            else:
                reactions.extend(self._extract_concept_text(m) for m in reaction.get('manifestation') or [])
        clinical_status = self._extract_code(allergy.get('clinicalStatus'))
        return ('allergy', allergy.get('recordedDate') or allergy.get('onsetDateTime'),
                self._extract_concept_text(allergy.get('code')),
                ', '.join(r for r in reactions if r) or None,
                [allergy.get('criticality'), clinical_status])

    def _normalize_immunization(self, imm: Dict):
        summary = None
        protocols = imm.get('protocolApplied') or []
        if protocols and protocols[0].get('doseNumberPositiveInt'):
            summary = f"Dose {protocols[0]['doseNumberPositiveInt']}"
        elif imm.get('lotNumber'):
            summary = f"Lot {imm['lotNumber']}"
        return ('immunization', imm.get('occurrenceDateTime') or imm.get('recorded'),
                self._extract_concept_text(imm.get('vaccineCode')), summary, [imm.get('status')])

    def _normalize_procedure(self, proc: Dict):
        date_value = proc.get('performedDateTime') or (proc.get('performedPeriod') or {}).get('start')
        summary = self._extract_concept_text(proc.get('outcome')) or None
        return ('procedure', date_value, self._extract_concept_text(proc.get('code')), summary,
                [proc.get('status')])

    def _normalize_encounter(self, enc: Dict):
        types = enc.get('type') or []
        title = self._extract_concept_text(types[0]) if types else None
        if not title:
            title = (enc.get('class') or {}).get('display') or 'Encounter'
        reasons = [self._extract_concept_text(r) for r in enc.get('reasonCode') or []]
        summary = ', '.join(r for r in reasons if r) or (enc.get('serviceProvider') or {}).get('display')
        return ('encounter', (enc.get('period') or {}).get('start'), title, summary, [enc.get('status')])

    def _extract_concept_text(self, concept: Optional[Dict]) -> Optional[str]:
        """CodeableConcept text, else the first coding display"""
        if not concept:
            return None
        if concept.get('text'):
            return concept['text']
        for coding in concept.get('coding') or []:
            if coding.get('display'):
                return coding['display']
        return None

    def _extract_code(self, concept: Optional[Dict]) -> Optional[str]:
        for coding in (concept or {}).get('coding') or []:
            if coding.get('code'):
                return coding['code']
        return None

    def _extract_observation_value(self, obs: Dict) -> Optional[str]:
        quantity = obs.get('valueQuantity')
        if quantity and quantity.get('value') is not None:
            unit = quantity.get('unit') or quantity.get('code') or ''
            return f"{quantity['value']} {unit}".strip()
        if obs.get('valueString'):
            return obs['valueString']
        if obs.get('valueCodeableConcept'):
            return self._extract_concept_text(obs['valueCodeableConcept'])
        if obs.get('valueBoolean') is not None:
            return 'Yes' if obs['valueBoolean'] else 'No'
        return None

    def _extract_medication_name(self, med: Dict) -> Optional[str]:
        name = self._extract_concept_text(med.get('medicationCodeableConcept'))
        if name:
            return name
        return (med.get('medicationReference') or {}).get('display')

    def _extract_dosage_text(self, dosages: Optional[List[Dict]]) -> Optional[str]:
        for dosage in dosages or []:
            if dosage.get('text'):
                return dosage['text']
        return None

    def extract_patient_identifiers(self, patient_resource: Dict) -> List[Dict]:
        """Patient.identifier entries that carry both a system and a value"""
        identifiers = []
        for identifier in patient_resource.get('identifier') or []:
            system, value = identifier.get('system'), identifier.get('value')
            if system and value:
                identifiers.append({'system': system, 'value': value, 'use': identifier.get('use')})
        return identifiers

    def extract_managing_organization_id(self, patient_resource: Dict) -> Optional[str]:
        """Organization id from Patient.managingOrganization ('Organization/<id>')"""
        reference = (patient_resource.get('managingOrganization') or {}).get('reference') or ''
        if reference.startswith('Organization/'):
            return reference.split('/', 1)[1] or None
        return None

    def parse_organization(self, organization: Dict) -> Dict:
        """Subset of an Organization resource kept as provider metadata"""
        address = (organization.get('address') or [{}])[0]
        telecom = [
            {'system': t.get('system'), 'value': t.get('value')}
            for t in organization.get('telecom') or [] if t.get('value')
        ]
        return {
            'id': organization.get('id'),
            'name': organization.get('name'),
            'alias': organization.get('alias') or [],
            'telecom': telecom,
            'city': address.get('city'),
            'state': address.get('state'),
        }
