from __future__ import annotations

from sqlalchemy import Column, String, DateTime, Float, ForeignKey, Integer, Text

from .db import Base, utcnow

class Customer(Base):
    __tablename__ = "customers"
    id = Column(Integer, primary_key=True, autoincrement=True)
    trdr = Column(String, nullable=True, index=True)      # SoftOne TRDR, not unique locally
    code = Column(String, nullable=True)
    name = Column(String, nullable=True)
    afm = Column(String, nullable=True)                   # tax id
    address = Column(String, nullable=True)
    city = Column(String, nullable=True)
    zip = Column(String, nullable=True)
    country = Column(Integer, nullable=True)
    phone01 = Column(String, nullable=True)
    email = Column(String, nullable=True)
    isactive = Column(Integer, nullable=True)
    insdate = Column(DateTime, nullable=True)
    upddate = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

class Contract(Base):
    __tablename__ = "contracts"
    inst = Column(Integer, primary_key=True, autoincrement=False)
    code = Column(String, nullable=True)
    name = Column(String, nullable=True)
    trdr = Column(String, nullable=True, index=True)      # customer reference, required for plate assignment
    fromdate = Column(DateTime, nullable=True)
    finaldate = Column(DateTime, nullable=True)
    wdatefrom = Column(DateTime, nullable=True)
    wdateto = Column(DateTime, nullable=True)
    blocked = Column(Integer, nullable=True)
    isactive = Column(Integer, nullable=True)
    comments = Column(Text, nullable=True)
    insdate = Column(DateTime, nullable=True)
    upddate = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

class ContractLine(Base):
    __tablename__ = "contract_lines"
    instlines = Column(Integer, primary_key=True, autoincrement=False)
    inst = Column(Integer, ForeignKey("contracts.inst"), nullable=False, index=True)
    linenum = Column(Integer, nullable=True)
    sodtype = Column(Integer, nullable=True)
    mtrl = Column(String, nullable=True)
    busunits = Column(String, nullable=True)
    qty = Column(Float, nullable=True)
    price = Column(Float, nullable=True)
    fromdate = Column(DateTime, nullable=True)
    finaldate = Column(DateTime, nullable=True)
    comments = Column(Text, nullable=True)
    sncode = Column(String, nullable=True)                # license plate
    instliness = Column(String, nullable=True)
    mtrunit = Column(String, nullable=True)
    bailtype = Column(String, nullable=True)
    gpnt = Column(String, nullable=True)
    trdbranch = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

class Item(Base):
    __tablename__ = "items"
    items = Column(Integer, primary_key=True, autoincrement=False)  # MTRL without leading zeros
    mtrl = Column(String, nullable=False, index=True)
    code = Column(String, nullable=True)
    name = Column(String, nullable=True)
    mtrunit1 = Column(String, nullable=True)
    vat = Column(Integer, nullable=True)
    pricer = Column(Float, nullable=True)
    pricew = Column(Float, nullable=True)
    isactive = Column(Integer, nullable=False, default=1)
    insdate = Column(DateTime, nullable=True)
    upddate = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

class Payment(Base):
    __tablename__ = "payments"
    payment = Column(Integer, primary_key=True, autoincrement=False)
    code = Column(String, nullable=True)
    name = Column(String, nullable=True)
    isactive = Column(Integer, nullable=True)
    instalments = Column(Integer, nullable=True)
    insdate = Column(DateTime, nullable=True)
    upddate = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
