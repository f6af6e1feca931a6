"""Prompt templates for ventilator configuration feedback.

Learners are Spanish-speaking, so prompts and labels are in Spanish.
"""

PARAMETER_LABELS = {
    "fio2": "FiO2",
    "volumen": "Volumen Tidal",
    "presionMax": "Presión Máxima",
    "peep": "PEEP",
    "frecuencia": "Frecuencia Respiratoria",
    "inspiracionEspiracion": "Relación I:E",
    "pausaInspiratoria": "Pausa Inspiratoria",
    "pausaEspiratoria": "Pausa Espiratoria",
    "qMax": "Flujo Máximo",
}

PARAMETER_UNITS = {
    "fio2": "%",
    "volumen": "ml",
    "presionMax": "cmH2O",
    "peep": "cmH2O",
    "frecuencia": "resp/min",
    "inspiracionEspiracion": "",
    "pausaInspiratoria": "s",
    "pausaEspiratoria": "s",
    "qMax": "L/min",
}

MODE_NAMES = {
    "volume": "Volumen Control",
    "pressure": "Presión Control",
}

ANALYSIS_TEMPLATE = """Actúa como especialista en ventilación mecánica. Revisa la configuración del ventilador que propone el estudiante y explica qué debe corregir.

MODO: {mode}

CONFIGURACIÓN ACTUAL DEL USUARIO:
{current}

CONFIGURACIÓN ÓPTIMA RECOMENDADA:
{optimal}
{patient}
INSTRUCCIONES:
1. Señala cada parámetro mal configurado
2. Explica el problema con lenguaje claro
3. Indica el valor o rango que corregiría cada error
4. Ordena los errores por severidad (crítico, moderado, leve)
5. Antepón siempre la seguridad del paciente

FORMATO DE RESPUESTA:
- Resumen (2-3 líneas)
- Errores críticos
- Errores moderados
- Errores leves
- Recomendaciones
- Consideraciones de seguridad

Responde en español."""


def format_config(config: dict | None) -> str:
    """One ``- Label: value unit`` line per set parameter."""
    if not isinstance(config, dict) or not config:
        return "Configuración no disponible"
    lines = []
    for key, value in config.items():
        if value is None or value == "":
            continue
        unit = PARAMETER_UNITS.get(key, "")
        line = f"- {PARAMETER_LABELS.get(key, key)}: {value}"
        lines.append(f"{line} {unit}" if unit else line)
    return "\n".join(lines) or "Configuración no disponible"


def format_patient_data(patient_data: dict | None) -> str:
    """Patient block; accepts the data flat or under ``patientBasicData``."""
    if not isinstance(patient_data, dict) or not patient_data:
        return ""
    data = patient_data.get("patientBasicData", patient_data)
    if not isinstance(data, dict):
        return ""
    return "\n".join([
        "DATOS DEL PACIENTE:",
        f"- Edad: {data.get('edad') or 'No especificada'} años",
        f"- Peso: {data.get('peso') or 'No especificado'} kg",
        f"- Altura: {data.get('altura') or 'No especificada'} cm",
        f"- Diagnóstico: {data.get('diagnostico') or data.get('diagnóstico') or 'No especificado'}",
        f"- Condición: {data.get('condicion') or data.get('condición') or 'No especificada'}",
    ])


def build_ventilator_analysis_prompt(
    user_config: dict,
    optimal_config: dict | None,
    ventilation_mode: str,
    patient_data: dict | None = None,
) -> str:
    patient = format_patient_data(patient_data)
    return ANALYSIS_TEMPLATE.format(
        mode=MODE_NAMES.get(ventilation_mode, ventilation_mode),
        current=format_config(user_config),
        optimal=format_config(optimal_config) if optimal_config else "No disponible (sin datos del paciente)",
        patient=f"\n{patient}\n" if patient else "",
    )
