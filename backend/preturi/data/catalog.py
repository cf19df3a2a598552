# Справочники по умолчанию: департаменты, pipeline со stage, инструменты, услуги, детали.
# Заполняются при старте, если таблица pipelines пуста.

from decimal import Decimal

from preturi.entities import Department, Instrument, Part, Pipeline, Service, Stage

DEPARTMENTS = [
    {"id": "dep-saloane", "name": "Saloane"},
    {"id": "dep-horeca", "name": "Horeca"},
    {"id": "dep-frizerii", "name": "Frizerii"},
    {"id": "dep-reparatii", "name": "Reparatii"},
]

_WAITING_STAGES = ["Noua", "IN LUCRU", "IN ASTEPTARE", "FINALIZATA"]
_REPAIR_STAGES = ["Noua", "IN LUCRU", "ASTEPT PIESE", "FINALIZATA"]

PIPELINES = [
    {"id": "pl-saloane", "name": "Saloane", "department_id": "dep-saloane", "stages": _WAITING_STAGES},
    {"id": "pl-horeca", "name": "Horeca", "department_id": "dep-horeca", "stages": _WAITING_STAGES},
    {"id": "pl-frizerii", "name": "Frizerii", "department_id": "dep-frizerii", "stages": _WAITING_STAGES},
    {"id": "pl-reparatii", "name": "Reparatii", "department_id": "dep-reparatii", "stages": _REPAIR_STAGES},
    {"id": "pl-receptie", "name": "Receptie", "department_id": None,
     "stages": ["Noua", "Office Direct", "Curier Trimis", "De Facturat"]},
]

INSTRUMENTS = [
    {"id": "ins-forfecuta", "name": "Forfecuta cuticule", "department_id": "dep-saloane",
     "weight": Decimal("0.05"), "pipeline": "Saloane"},
    {"id": "ins-cleste", "name": "Cleste unghii", "department_id": "dep-saloane",
     "weight": Decimal("0.08"), "pipeline": None},
    {"id": "ins-cutit", "name": "Cutit bucatarie", "department_id": "dep-horeca",
     "weight": Decimal("0.20"), "pipeline": "horeca"},
    {"id": "ins-foarfeca", "name": "Foarfeca frizerie", "department_id": "dep-frizerii",
     "weight": Decimal("0.10"), "pipeline": "Frizerii"},
    {"id": "ins-masina", "name": "Masina de tuns", "department_id": "dep-reparatii",
     "weight": Decimal("0.60"), "pipeline": "Reparatii"},
]

SERVICES = [
    {"id": "srv-ascutire-forfecuta", "name": "Ascutire forfecuta", "price": Decimal("40"),
     "instrument_id": "ins-forfecuta"},
    {"id": "srv-ascutire-cleste", "name": "Ascutire cleste", "price": Decimal("45"),
     "instrument_id": "ins-cleste"},
    {"id": "srv-ascutire-cutit", "name": "Ascutire cutit", "price": Decimal("30"),
     "instrument_id": "ins-cutit"},
    {"id": "srv-ascutire-foarfeca", "name": "Ascutire foarfeca", "price": Decimal("80"),
     "instrument_id": "ins-foarfeca"},
    {"id": "srv-reglaj-foarfeca", "name": "Reglaj foarfeca", "price": Decimal("50"),
     "instrument_id": "ins-foarfeca"},
    {"id": "srv-revizie-masina", "name": "Revizie masina de tuns", "price": Decimal("150"),
     "instrument_id": "ins-masina"},
]

PARTS = [
    {"id": "prt-lama", "name": "Lama masina de tuns", "price": Decimal("120")},
    {"id": "prt-surub", "name": "Surub reglaj", "price": Decimal("15")},
]


def default_departments() -> list[Department]:
    return [Department(**d) for d in DEPARTMENTS]


def default_pipelines() -> list[Pipeline]:
    pipelines = []
    for p in PIPELINES:
        stages = [
            Stage(id=f"{p['id']}-{i}", pipeline_id=p["id"], name=name, position=i)
            for i, name in enumerate(p["stages"])
        ]
        pipelines.append(Pipeline(id=p["id"], name=p["name"], department_id=p["department_id"], stages=stages))
    return pipelines


def default_instruments() -> list[Instrument]:
    return [Instrument(**i) for i in INSTRUMENTS]


def default_services() -> list[Service]:
    return [Service(**s) for s in SERVICES]


def default_parts() -> list[Part]:
    return [Part(**p) for p in PARTS]
